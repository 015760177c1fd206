"""Exception types raised across swingtrack."""


class LevelsValidationError(ValueError):
    """Levels are missing or inconsistent; the simulator refuses to run."""


class BarOrderError(ValueError):
    """Bars are not in strictly ascending date order."""


class SchemaError(ValueError):
    """A persisted document or enum value has an unknown shape."""


class DataUnavailableError(LookupError):
    """No usable market data for an instrument."""
