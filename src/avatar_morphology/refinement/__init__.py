"""External refinement service contract and client."""

from avatar_morphology.refinement.client import (
    HttpRefinementTransport,
    RefinementClient,
    RefinementOutcome,
    RefinementTransport,
    map_transport_exception,
)
from avatar_morphology.refinement.contract import (
    ClassificationHints,
    RefinementRequest,
    RefinementResponse,
    UserMeasurements,
    parse_refinement_response,
)
from avatar_morphology.refinement.errors import (
    BackoffConfig,
    RefinementRateLimitError,
    RefinementServiceError,
    RefinementTimeoutError,
    RefinementUnavailableError,
    SchemaIssue,
    SchemaValidationError,
)

__all__ = [
    "BackoffConfig",
    "ClassificationHints",
    "HttpRefinementTransport",
    "RefinementClient",
    "RefinementOutcome",
    "RefinementRateLimitError",
    "RefinementRequest",
    "RefinementResponse",
    "RefinementServiceError",
    "RefinementTimeoutError",
    "RefinementTransport",
    "RefinementUnavailableError",
    "SchemaIssue",
    "SchemaValidationError",
    "UserMeasurements",
    "map_transport_exception",
    "parse_refinement_response",
]
