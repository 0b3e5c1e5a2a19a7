from flexflow.domain.port import DataProcessor, DataSource
from flexflow.infrastructure.adapter.file_system.cache import CacheDataSource
from flexflow.infrastructure.adapter.file_system.data_source import FileSystemDataSource
from flexflow.infrastructure.adapter.rest_api.data_source import RestApiDataSource
from flexflow.infrastructure.adapter.sqlite.data_source import DatabaseDataSource
from flexflow.infrastructure.processor.expression_normalizer import ExpressionNormalizerProcessor
from flexflow.infrastructure.processor.vcf_annotator import VcfAnnotationProcessor


def get_data_source_types() -> dict[str, type[DataSource]]:
    """Returns the built-in data source classes keyed by their configuration type."""
    classes = [RestApiDataSource, DatabaseDataSource, FileSystemDataSource, CacheDataSource]
    return {cls.source_type: cls for cls in classes}


def get_processor_types() -> dict[str, type[DataProcessor]]:
    """Returns the built-in processor classes keyed by their configuration type."""
    classes = [VcfAnnotationProcessor, ExpressionNormalizerProcessor]
    return {cls.processor_type: cls for cls in classes}
