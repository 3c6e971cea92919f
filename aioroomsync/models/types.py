"""Base message types shared by the room synchronization wire models."""

from dataclasses import dataclass

from mashumaro.config import BaseConfig
from mashumaro.mixins.orjson import DataClassORJSONMixin
from mashumaro.types import Discriminator


@dataclass
class ServerMessage(DataClassORJSONMixin):
    """Base class for messages pushed by the server over the event stream."""

    class Config(BaseConfig):
        """Config for parsing json messages."""

        discriminator = Discriminator(field="type", include_subtypes=True)


@dataclass
class ErrorResponse(DataClassORJSONMixin):
    """Body of a non-conflict error response."""

    error: str
