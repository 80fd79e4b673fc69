from __future__ import annotations

from mywarranties.core.errors import InfraError, RejectedError, TransientError


class SheetsConfigError(InfraError):
    pass


class SheetsApiDisabledError(SheetsConfigError):
    pass


class SheetsNotFoundError(SheetsConfigError):
    pass


class SheetsCredentialsError(SheetsConfigError):
    pass


class SheetsPermissionError(RejectedError):
    pass


class SheetsRateLimitError(TransientError):
    pass


class SheetsUnavailableError(TransientError):
    """Red caída o transporte HTTP fallido; equivalente a estar offline."""
