"""
HTTP exceptions for API layer.

These exceptions are used ONLY in API routers to return proper HTTP responses.
They should NOT be used in services or repositories.
"""

from typing import Self

from fastapi import HTTPException, status


class CustomHTTPException(HTTPException):
    """Base HTTP exception with context support."""

    def with_context(self, detail: str) -> Self:
        """
        Add context to an HTTP exception.

        Args:
            detail: Additional information about the error

        Returns:
            The same HTTPException with updated details
        """
        self.detail = detail
        return self


def unauthorized() -> CustomHTTPException:
    return CustomHTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Missing actor identity",
    )


def forbidden() -> CustomHTTPException:
    return CustomHTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail="Not enough permissions to perform this action",
    )


def conflict() -> CustomHTTPException:
    return CustomHTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail="The request conflicts with the current state of the resource",
    )
