"""
Error taxonomy for the Toolflow pipeline.

Four kinds of failure reach the engine:
- TransientError: network, timeout or rate limit from a collaborator (retryable)
- StageInputError: malformed input or an unrecoverable defect (never retryable)
- PolicyViolation / ScopeViolation: the run asked for something it may not do
- CacheStoreError: durable cache tier unavailable (absorbed by the cache)

Budget exhaustion is not an exception; the engine reports it on the RunResult.
"""


class ToolflowError(Exception):
    """Base class for all Toolflow errors."""


class TransientError(ToolflowError):
    """A collaborator call failed in a way that may succeed on retry."""


class StageInputError(ToolflowError):
    """A stage received input it cannot work with."""


class PolicyViolation(ToolflowError):
    """The gate stage refused to let the run proceed."""


class ScopeViolation(ToolflowError):
    """An edit fell outside the run's scope."""


class CacheStoreError(ToolflowError):
    """The durable cache tier failed."""


class PipelineConfigurationError(ToolflowError):
    """The engine itself is misconfigured (empty or inconsistent registry)."""
