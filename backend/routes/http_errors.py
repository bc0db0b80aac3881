from fastapi import HTTPException, status

from backend.core.errors import (
    BookingConflict,
    BookingError,
    PermissionDenied,
    ResourceNotFound,
    SeriesConflict,
    StoreUnavailable,
)

DATABASE_UNAVAILABLE_DETAIL = 'Database unavailable. Verify DATABASE_URL and database credentials.'


def database_unavailable() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail=DATABASE_UNAVAILABLE_DETAIL,
    )


def to_http_exception(exc: BookingError, next_available: list | None = None) -> HTTPException:
    if isinstance(exc, SeriesConflict):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                'message': exc.message,
                'total_occurrences': exc.total_occurrences,
                'occurrences': [occurrence.as_dict() for occurrence in exc.occurrences],
            },
        )
    if isinstance(exc, BookingConflict):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                'message': exc.message,
                'conflicts': [reason.as_dict() for reason in exc.reasons],
                'next_available': next_available or [],
            },
        )
    if isinstance(exc, ResourceNotFound):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=exc.message)
    if isinstance(exc, PermissionDenied):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=exc.message)
    if isinstance(exc, StoreUnavailable):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=exc.message)
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.message)
