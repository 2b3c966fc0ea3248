class TracerError(Exception):
    pass


class PolicyViolation(TracerError):
    pass


class LedgerError(TracerError):
    pass


class DataSourceError(TracerError):
    pass


class NotFoundError(DataSourceError):
    pass


class InvalidQueryError(DataSourceError):
    pass


class UnsupportedQueryError(DataSourceError):
    pass


class DataIntegrityError(DataSourceError):
    pass


class SourceUnavailableError(DataSourceError):
    pass


class RateLimitError(SourceUnavailableError):
    pass
