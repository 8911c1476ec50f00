from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    database_url: str = Field(default="sqlite:///./vm_orchestrator.db")

    api_key: str | None = Field(default=None)
    trust_forwarded_headers: bool = Field(default=True)

    azure_subscription_id: str = Field(default="00000000-0000-0000-0000-000000000000")
    azure_resource_group: str = Field(default="ephemeral-vms")
    azure_location: str = Field(default="westeurope")
    azure_vnet_name: str = Field(default="myVnet")
    azure_subnet_name: str = Field(default="default")
    azure_tenant_id: str | None = Field(default=None)
    azure_client_id: str | None = Field(default=None)
    azure_client_secret: str | None = Field(default=None)
    azure_access_token: str | None = Field(default=None)
    azure_authority_host: str | None = Field(default=None)
    arm_base_url: str = Field(default="https://management.azure.com")

    vm_size: str = Field(default="Standard_B1s")
    admin_username: str = Field(default="azureuser", min_length=1)

    default_lifetime_sec: int = Field(default=3600, ge=60)
    max_lifetime_sec: int = Field(default=8 * 3600, ge=60)
    max_active_vms: int = Field(default=10, ge=1)

    sweep_interval_sec: int = Field(default=60, ge=1)
    run_sweeper_in_process: bool = Field(default=False)

    retry_attempts: int = Field(default=3, ge=1)
    retry_backoff_factor: float = Field(default=0.8, ge=0.0)
    lro_poll_interval_sec: float = Field(default=5.0, ge=0.0)
    lro_timeout_sec: int = Field(default=1800, ge=1)
    provisioning_grace_sec: int = Field(default=3600, ge=0)

    log_level: str = Field(default="INFO")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
