import copy
import re
from typing import Any

from flexflow.domain.error import ExecutionError
from flexflow.domain.port import DataProcessor
from flexflow.domain.service import filter_items

_ALLELE_SEPARATOR = re.compile(r"[/|]")


def variant_id(variant: dict[str, Any]) -> str:
    return f"{variant.get('chrom', '')}:{variant.get('pos', '')}:{variant.get('ref', '')}:{variant.get('alt', '')}"


def classify_variant(ref: str, alt: str) -> str:
    if len(ref) == len(alt) == 1:
        return "SNV"
    if len(ref) < len(alt) and alt.startswith(ref):
        return "insertion"
    if len(ref) > len(alt) and ref.startswith(alt):
        return "deletion"
    if len(ref) == len(alt):
        return "MNV"
    return "complex"


def zygosity(genotype: str | None) -> str:
    if not genotype:
        return "unknown"
    alleles = _ALLELE_SEPARATOR.split(genotype)
    if "." in alleles:
        return "unknown"
    if len(alleles) == 1:
        return "hemizygous"
    if len(set(alleles)) > 1:
        return "heterozygous"
    return "homozygous_reference" if alleles[0] == "0" else "homozygous_alternate"


class VcfAnnotationProcessor(DataProcessor):
    """Annotates parsed VCF variants.

    Input is a list of variant objects (``chrom``, ``pos``, ``ref``, ``alt``,
    optional ``genotype``) or an object holding them under ``variants``.

    Config:
    - ``annotation_sources``: names recorded on every variant
    - ``annotations``: lookup table ``"chrom:pos:ref:alt" -> {field: value}``
    - ``filter``: condition applied to the annotated variants, e.g. ``variant_class == "SNV"``
    """

    processor_type = "vcf_annotator"

    def process(self, input: Any, config: dict[str, Any]) -> Any:
        variants = input.get("variants") if isinstance(input, dict) else input
        if not isinstance(variants, list):
            raise ExecutionError("vcf_annotator expects a list of variants")
        sources = list(config.get("annotation_sources") or [])
        lookup = config.get("annotations") or {}

        annotated = [self.annotate_variant(variant, sources, lookup) for variant in variants]
        criteria = config.get("filter")
        if criteria:
            annotated = filter_items(annotated, criteria)
        return annotated

    def annotate_variant(self, variant: Any, sources: list[str], lookup: dict[str, Any]) -> dict[str, Any]:
        if not isinstance(variant, dict):
            raise ExecutionError(f"Variant must be an object, got {type(variant).__name__}")
        ref, alt = variant.get("ref"), variant.get("alt")
        if not isinstance(ref, str) or not isinstance(alt, str) or not ref or not alt:
            raise ExecutionError(f"Variant {variant_id(variant)} needs 'ref' and 'alt' alleles")
        annotated = copy.deepcopy(variant)
        vid = variant_id(variant)
        annotated["variant_id"] = vid
        annotated["variant_class"] = classify_variant(ref.upper(), alt.upper())
        annotated["zygosity"] = zygosity(variant.get("genotype"))
        annotated["annotation_sources"] = sources
        annotated["annotations"] = copy.deepcopy(lookup.get(vid, {}))
        return annotated

    def get_type(self) -> str:
        return self.processor_type
