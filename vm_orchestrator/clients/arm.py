import logging
import time
from contextlib import contextmanager
from typing import Any, Iterator

from azure.core.credentials import AccessToken, TokenCredential
from azure.core.exceptions import AzureError, ResourceNotFoundError
from azure.core.polling import LROPoller
from azure.identity import ClientSecretCredential, DefaultAzureCredential


logger = logging.getLogger(__name__)

STATIC_TOKEN_LIFETIME_SEC = 3600


class ResourceNotFound(RuntimeError):
    def __init__(self, resource: str):
        self.resource = resource
        super().__init__(f"resource not found: {resource}")


class ProviderError(RuntimeError):
    def __init__(self, *, resource: str, detail: str, status_code: int | None = None):
        self.resource = resource
        self.detail = detail
        self.status_code = status_code
        super().__init__(f"azure call on {resource} failed: {detail}")


class OperationTimeout(RuntimeError):
    pass


PROVIDER_ERRORS = (ProviderError, OperationTimeout)


class StaticTokenCredential:
    """TokenCredential over a pre-issued ARM bearer token."""

    def __init__(self, token: str):
        self._token = token

    def get_token(self, *scopes: str, **kwargs: Any) -> AccessToken:
        return AccessToken(self._token, int(time.time()) + STATIC_TOKEN_LIFETIME_SEC)


def build_credential(
    *,
    static_token: str | None = None,
    tenant_id: str | None = None,
    client_id: str | None = None,
    client_secret: str | None = None,
    authority: str | None = None,
) -> TokenCredential:
    if static_token:
        return StaticTokenCredential(static_token)
    if tenant_id and client_id and client_secret:
        return ClientSecretCredential(
            tenant_id, client_id, client_secret, authority=authority
        )
    # Environment, workload identity, managed identity, Azure CLI.
    return DefaultAzureCredential(authority=authority)


@contextmanager
def translate_errors(resource: str) -> Iterator[None]:
    try:
        yield
    except ResourceNotFoundError as exc:
        raise ResourceNotFound(resource) from exc
    except AzureError as exc:
        raise ProviderError(
            resource=resource,
            detail=exc.message or exc.__class__.__name__,
            status_code=getattr(exc, "status_code", None),
        ) from exc


def wait_for(poller: LROPoller, resource: str, timeout_sec: int) -> Any:
    """Block until the SDK poller for ``resource`` finishes.

    Failed operations surface as ``ProviderError``, a poller still running
    after ``timeout_sec`` as ``OperationTimeout``.
    """
    with translate_errors(resource):
        result = poller.result(timeout=timeout_sec)
        if not poller.done():
            raise OperationTimeout(
                f"operation on {resource} did not finish within {timeout_sec}s"
            )
    logger.debug("long-running operation finished resource=%s", resource)
    return result
