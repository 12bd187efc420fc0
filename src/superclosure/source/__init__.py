from .extractor import (
    extract_code,
    literal_kind,
    literal_name,
    reindent,
    trim_to_literal,
)
from .introspection import SourceLocation, live_bindings, locate, parameters
