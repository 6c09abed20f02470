"""
Excepciones de dominio con su código HTTP asociado
"""

from typing import Any, Optional


class BrandVizError(Exception):
    """Error base de la aplicación"""
    status_code: int = 400

    def __init__(self, message: str, data: Optional[Any] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.data = data
        if status_code is not None:
            self.status_code = status_code


class UnauthorizedError(BrandVizError):
    status_code = 401

    def __init__(self, message: str = "Unauthorized access!", data: Optional[Any] = None):
        super().__init__(message, data)


class InsufficientCreditsError(BrandVizError):
    status_code = 402


class ForbiddenError(BrandVizError):
    status_code = 403


class NotFoundError(BrandVizError):
    status_code = 404


class ConflictError(BrandVizError):
    status_code = 409
