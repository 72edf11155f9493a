from __future__ import annotations


class DashboardError(RuntimeError):
    """Base class for failures the dashboard reports to the user."""


class FetchError(DashboardError):
    """Network error, non-2xx response, timeout, or an empty payload."""


class ParseError(DashboardError):
    """The whole payload could not be parsed into rows."""


class StoreLoadError(DashboardError):
    """The analytical store could not be opened or a table could not be built."""


class LoadTimeoutError(StoreLoadError):
    pass
