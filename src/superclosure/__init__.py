"""Wrap Python closures, inspect their source and captures, and persist them.

    >>> import superclosure
    >>> a = 10
    >>> add = superclosure.wrap(lambda x: x + a)
    >>> superclosure.get_code(add), superclosure.get_used_variables(add)
    ('lambda x: x + a', {'a': 10})
    >>> restored = superclosure.deserialize(superclosure.serialize(add))
    >>> restored(5)
    15
"""

import os
from importlib.metadata import PackageNotFoundError, version

import yaml

from .schema.config import ConfigModel

try:
    __version__ = version("superclosure")
except PackageNotFoundError:
    __version__ = "unknown version"

PATH = os.path.dirname(os.path.abspath(__file__))

with open(os.path.join(PATH, "config.yaml"), "r") as file:
    CONFIG = ConfigModel(**yaml.safe_load(file))

from .errors import (
    ClosureError,
    InvalidInputError,
    ParseError,
    ReconstructionError,
    SourceUnavailableError,
)
from .closure import (
    WrappedClosure,
    deserialize,
    get_code,
    get_parameters,
    get_used_variables,
    invoke,
    serialize,
    wrap,
)
from .serialization import PersistedForm, dumps, loads
