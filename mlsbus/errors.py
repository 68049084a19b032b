"""Exception types raised by the channel glue around the bus."""


class MlsBusError(Exception):
    """Base class for mlsbus errors."""


class ConfigError(MlsBusError):
    """Account configuration is missing or incomplete."""


class SendError(MlsBusError):
    """The relay binary failed to send a message."""
