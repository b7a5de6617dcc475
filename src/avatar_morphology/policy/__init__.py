"""Gender mapping tables and morph policy construction."""

from avatar_morphology.policy.builder import PolicyBuilder, allow_list
from avatar_morphology.policy.mapping import (
    GenderMappingSection,
    GenderMappingTable,
    InvalidMappingError,
    default_mapping_table,
    load_mapping_table,
    parse_mapping_table,
)

__all__ = [
    "GenderMappingSection",
    "GenderMappingTable",
    "InvalidMappingError",
    "PolicyBuilder",
    "allow_list",
    "default_mapping_table",
    "load_mapping_table",
    "parse_mapping_table",
]
