from __future__ import annotations


class AppError(Exception):
    pass


class BusinessError(AppError):
    pass


class ValidationError(BusinessError):
    pass


class NotFoundError(BusinessError):
    """Registro local inexistente; el llamador lo trata como ausencia."""

    def __init__(self, record_id: str) -> None:
        super().__init__(f"Registro no encontrado: {record_id}")
        self.record_id = record_id


class ConflictError(BusinessError):
    """Ediciones concurrentes divergentes sobre el mismo registro."""

    def __init__(self, record_id: str, message: str = "") -> None:
        super().__init__(message or f"Conflicto de sincronización en {record_id}")
        self.record_id = record_id


class InfraError(AppError):
    pass


class PersistenceError(InfraError):
    pass


class ExternalServiceError(InfraError):
    pass


class TransientError(ExternalServiceError):
    """Fallo de red o indisponibilidad remota; se reintenta con backoff."""


class RejectedError(ExternalServiceError):
    """Rechazo remoto permanente (p. ej. permisos); no se reintenta."""
