"""Exception taxonomy for the discovery pipeline."""

from typing import Optional


class DiscoveryError(Exception):
    """Base class for all pipeline errors."""


class AcquisitionError(DiscoveryError):
    """Search or crawl failed. Fatal to the job that raised it."""


class SourceUnreachable(AcquisitionError):
    """A crawl source could not be fetched."""

    def __init__(self, source_id: str, message: str):
        super().__init__(message)
        self.source_id = source_id


class ProviderError(DiscoveryError):
    """An external model provider call failed."""

    def __init__(self, provider: str, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class ValidationProviderError(DiscoveryError):
    """Validation of a single candidate failed. Never fatal to a job."""


class MalformedCandidateError(DiscoveryError):
    """Candidate is missing required fields and cannot be processed."""


class StorageConflict(DiscoveryError):
    """A stored event with the same fingerprint already exists."""

    def __init__(self, fingerprint: str):
        super().__init__(f"Event with fingerprint {fingerprint} already stored")
        self.fingerprint = fingerprint


class ConfigurationNotFound(DiscoveryError):
    """A market, category or crawl source row does not exist."""


class JobNotFound(DiscoveryError):
    """A discovery job row does not exist."""
