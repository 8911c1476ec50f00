from functools import lru_cache

from azure.core.credentials import TokenCredential
from azure.mgmt.compute import ComputeManagementClient
from azure.mgmt.network import NetworkManagementClient

from vm_orchestrator.clients.arm import build_credential
from vm_orchestrator.clients.compute import ComputeClient
from vm_orchestrator.clients.network import NetworkClient
from vm_orchestrator.config import get_settings


@lru_cache(maxsize=1)
def _credential() -> TokenCredential:
    settings = get_settings()
    return build_credential(
        static_token=settings.azure_access_token,
        tenant_id=settings.azure_tenant_id,
        client_id=settings.azure_client_id,
        client_secret=settings.azure_client_secret,
        authority=settings.azure_authority_host,
    )


def _sdk_options() -> dict:
    settings = get_settings()
    return {
        "base_url": settings.arm_base_url,
        "retry_total": settings.retry_attempts,
        "retry_backoff_factor": settings.retry_backoff_factor,
    }


@lru_cache(maxsize=1)
def build_compute_client() -> ComputeClient:
    settings = get_settings()
    sdk = ComputeManagementClient(
        _credential(), settings.azure_subscription_id, **_sdk_options()
    )
    return ComputeClient(
        sdk,
        resource_group=settings.azure_resource_group,
        location=settings.azure_location,
        vm_size=settings.vm_size,
        poll_interval_sec=settings.lro_poll_interval_sec,
        lro_timeout_sec=settings.lro_timeout_sec,
    )


@lru_cache(maxsize=1)
def build_network_client() -> NetworkClient:
    settings = get_settings()
    sdk = NetworkManagementClient(
        _credential(), settings.azure_subscription_id, **_sdk_options()
    )
    return NetworkClient(
        sdk,
        subscription_id=settings.azure_subscription_id,
        resource_group=settings.azure_resource_group,
        location=settings.azure_location,
        vnet_name=settings.azure_vnet_name,
        subnet_name=settings.azure_subnet_name,
        poll_interval_sec=settings.lro_poll_interval_sec,
        lro_timeout_sec=settings.lro_timeout_sec,
    )
