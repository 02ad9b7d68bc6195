"""Tenant mapping and operator-editable mapping overrides."""

from .applier import OverrideResult, apply_csv_overrides
from .csv_store import OverrideTable, is_included, load_directory, parse_csv, write_csv
from .generator import MappingData, write_mapping_csvs
from .org_mapper import (
    build_binding_group_key,
    map_projects_to_organizations,
    map_resources_to_organizations,
)

__all__ = [
    "MappingData",
    "OverrideResult",
    "OverrideTable",
    "apply_csv_overrides",
    "build_binding_group_key",
    "is_included",
    "load_directory",
    "map_projects_to_organizations",
    "map_resources_to_organizations",
    "parse_csv",
    "write_csv",
    "write_mapping_csvs",
]
