# hitcounter/errors.py


class HitCounterError(Exception):
    """Base class for everything the hit counter raises on purpose."""


class ConfigError(HitCounterError):
    """Schema or strategy configuration is missing or malformed."""


class ClockError(HitCounterError):
    """The time source could not produce the current instant."""


class StoreError(HitCounterError):
    CONNECTION = "connection"
    CONSTRAINT = "constraint"
    TIMEOUT = "timeout"

    KINDS = (CONNECTION, CONSTRAINT, TIMEOUT)

    def __init__(self, kind: str, message: str = ""):
        if kind not in self.KINDS:
            raise ValueError(f"unknown store error kind: {kind!r}")
        self.kind = kind
        super().__init__(f"[{kind}] {message}" if message else kind)
