class PromoMailError(Exception):
    """Base class for every error the generation core raises."""

    diagnostic_log: str | None = None  # set by flows that keep a generation trace


class ConfigurationError(PromoMailError):
    """A provider credential is missing."""


class FetchError(PromoMailError):
    """A caller-owned page fetch failed (network error or non-2xx)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ExtractionError(PromoMailError):
    """Product data could not be extracted in a usable shape."""


class ProviderResponseError(PromoMailError):
    """An LLM provider returned a structurally invalid response."""


class EmptyResponseError(ProviderResponseError):
    """An LLM provider returned no text once trimmed."""


class GenerationError(PromoMailError):
    """The generated email is missing or too short to be usable."""


class PipelineStageError(PromoMailError):
    """A hybrid pipeline stage failed; carries the stage label."""

    def __init__(self, stage: str, cause: Exception):
        super().__init__(f"{stage.capitalize()} stage failed: {cause}")
        self.stage = stage
        self.cause = cause
