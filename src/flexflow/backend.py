from enum import Enum


class DataSourceType(Enum):
    """Built-in data source types, as named in configuration documents."""

    REST_API = "rest_api"
    DATABASE = "database"
    FILE_SYSTEM = "file_system"
    CACHE = "cache"
