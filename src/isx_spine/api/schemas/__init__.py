"""
API schemas package.

Manifesto:
    Pydantic schemas define the API contract. Centralising them here
    keeps routers and the engine decoupled from serialisation details.

Doc-Types:
    api-reference
"""

from isx_spine.api.schemas.common import (
    ErrorDetail,
    PagedResponse,
    PageMeta,
    ProblemDetail,
    SuccessResponse,
)
from isx_spine.api.schemas.operations import (
    DeleteResultSchema,
    OperationAcceptedSchema,
    OperationMetricsSchema,
    OperationTypeSchema,
    StopAllResultSchema,
    StopResultSchema,
)

__all__ = [
    "DeleteResultSchema",
    "ErrorDetail",
    "OperationAcceptedSchema",
    "OperationMetricsSchema",
    "OperationTypeSchema",
    "PageMeta",
    "PagedResponse",
    "ProblemDetail",
    "StopAllResultSchema",
    "StopResultSchema",
    "SuccessResponse",
]
