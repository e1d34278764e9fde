# errors.py


class InvalidTimeZone(ValueError):
    """Timezone name that neither the friendly-name table nor zoneinfo knows."""

    def __init__(self, name):
        self.name = name
        super().__init__(f"unknown time zone: {name!r}")


class MalformedTimeString(ValueError):
    def __init__(self, raw):
        self.raw = raw
        super().__init__(f"should be in the format: 9:00am (got {raw!r})")


class NotFound(LookupError):
    def __init__(self, entity: str, ident):
        self.entity = entity
        self.ident = ident
        super().__init__(f"{entity} {ident} not found")


class DigestAlreadySent(RuntimeError):
    """Today's digest for the standup has already gone out."""


class DigestConflict(RuntimeError):
    """Another composition claimed some of the pending items first."""
