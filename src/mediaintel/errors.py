from __future__ import annotations


class ConfigError(ValueError):
    pass


class PipelineError(Exception):
    """Base class for failures raised by job handlers.

    ``retryable`` tells the queue whether the job may be attempted again under
    its lane's retry policy.
    """

    retryable = True


class TransientError(PipelineError):
    retryable = True


class PermanentJobError(PipelineError):
    retryable = False


class FetchError(TransientError):
    pass


class AnalyzerError(TransientError):
    pass


class AnalysisParseError(AnalyzerError):
    pass


class ArticleNotFoundError(PermanentJobError):
    pass


class UnsupportedSourceError(PermanentJobError):
    pass


class InvalidPayloadError(PermanentJobError):
    pass
