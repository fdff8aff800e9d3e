from __future__ import annotations


class IntegrationUnavailableError(RuntimeError):
    """An outbound integration cannot be used with the current configuration."""

    code = "INTEGRATION_UNAVAILABLE"

    def __init__(self, integration: str, detail: str = ""):
        self.integration = str(integration or "unknown")
        self.detail = str(detail or "").strip()
        suffix = f":{self.detail}" if self.detail else ""
        super().__init__(f"{self.code}:{self.integration}{suffix}")


class IntegrationDisabledError(IntegrationUnavailableError):
    code = "INTEGRATION_DISABLED"


class IntegrationMisconfiguredError(IntegrationUnavailableError):
    code = "INTEGRATION_MISCONFIGURED"
