class ScrapeError(Exception):
    """Base class for failures that abort a scrape run."""


class NavigationError(ScrapeError):
    pass


class EvaluationError(ScrapeError):
    """A script evaluated in the page raised or the page went away.

    During convergence cycles this is recoverable: callers log it and treat
    the cycle as having produced no information.
    """


class SessionTimeout(ScrapeError):
    """The overall acquisition deadline expired."""


class ExtractionError(ScrapeError):
    """The extracted record array could not be produced or parsed."""


class PersistenceError(ScrapeError):
    """The store could not be opened or the batch could not be committed."""
