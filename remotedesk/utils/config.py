"""Strict TOML loading for the relay's pydantic settings models.

TOML values are validated in pydantic's strict mode, so `port = "5005"` is
rejected instead of being coerced, and unknown keys fail on models that
forbid extras such as
[`RelayServingConfig`][remotedesk.relay.config.RelayServingConfig].
"""
from __future__ import annotations

import sys
from typing import BinaryIO
from typing import TypeVar

from pydantic import BaseModel

if sys.version_info >= (3, 11):  # pragma: >=3.11 cover
    import tomllib
else:  # pragma: <3.11 cover
    import tomli as tomllib

ModelT = TypeVar('ModelT', bound=BaseModel)


def load(model: type[ModelT], fp: BinaryIO) -> ModelT:
    """Read a settings model from a TOML file opened in binary mode.

    Raises:
        ValueError: If the file is not valid TOML.
        pydantic.ValidationError: If the values do not match `model`.
    """
    return loads(model, fp.read().decode())


def loads(model: type[ModelT], data: str) -> ModelT:
    """Read a settings model from a TOML document.

    Tables map to nested models and missing keys take the model defaults.
    """
    return model.model_validate(tomllib.loads(data), strict=True)
