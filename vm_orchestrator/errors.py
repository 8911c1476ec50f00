class LifecycleError(RuntimeError):
    kind = "LifecycleError"
    status_code = 500

    def __init__(self, message: str, *, vm_name: str | None = None):
        self.message = message
        self.vm_name = vm_name
        super().__init__(message)

    def to_payload(self) -> dict:
        return {"error": {"kind": self.kind, "message": self.message}}


class InvalidRequest(LifecycleError):
    kind = "InvalidRequest"
    status_code = 400


class UnsupportedOS(LifecycleError):
    kind = "UnsupportedOS"
    status_code = 400


class NotFound(LifecycleError):
    kind = "NotFound"
    status_code = 404


class AlreadyExists(LifecycleError):
    kind = "AlreadyExists"
    status_code = 409


class QuotaExceeded(LifecycleError):
    kind = "QuotaExceeded"
    status_code = 429


class ProvisioningFailed(LifecycleError):
    kind = "ProvisioningFailed"
    status_code = 502

    def __init__(self, *, vm_name: str, stage: str, detail: str):
        self.stage = stage
        self.detail = detail
        super().__init__(
            f"provisioning failed vm={vm_name} stage={stage}: {detail}",
            vm_name=vm_name,
        )


class ProviderUnavailable(LifecycleError):
    kind = "ProviderUnavailable"
    status_code = 503


class Unauthorized(LifecycleError):
    kind = "Unauthorized"
    status_code = 401
