class OfficenetError(Exception):
    pass


class ConfigParseError(OfficenetError):
    """ISP configuration text could not be decoded."""


class TimezoneResolutionError(ValueError, OfficenetError):
    """A timezone name did not resolve to a known zone."""


class OfficeNotFoundError(OfficenetError):
    pass


class MeasurementError(RuntimeError, OfficenetError):
    """The speed test itself failed (transport error, bad output)."""


class PersistenceError(OfficenetError):
    """A read/write against the store failed."""
