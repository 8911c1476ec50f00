from dataclasses import dataclass

from azure.mgmt.network import NetworkManagementClient

from vm_orchestrator.clients.arm import translate_errors, wait_for


@dataclass
class PublicAddress:
    id: str
    ip_address: str | None


class NetworkClient:
    def __init__(
        self,
        sdk: NetworkManagementClient,
        *,
        subscription_id: str,
        resource_group: str,
        location: str,
        vnet_name: str,
        subnet_name: str,
        poll_interval_sec: float = 5.0,
        lro_timeout_sec: int = 1800,
    ):
        self.sdk = sdk
        self.subscription_id = subscription_id
        self.resource_group = resource_group
        self.location = location
        self.vnet_name = vnet_name
        self.subnet_name = subnet_name
        self.poll_interval_sec = poll_interval_sec
        self.lro_timeout_sec = lro_timeout_sec

    def subnet_id(self) -> str:
        return (
            f"/subscriptions/{self.subscription_id}"
            f"/resourceGroups/{self.resource_group}"
            f"/providers/Microsoft.Network/virtualNetworks/{self.vnet_name}"
            f"/subnets/{self.subnet_name}"
        )

    def _create(self, operations, resource: str, name: str, parameters: dict):
        with translate_errors(resource):
            poller = operations.begin_create_or_update(
                self.resource_group,
                name,
                parameters,
                polling_interval=self.poll_interval_sec,
            )
        return wait_for(poller, resource, self.lro_timeout_sec)

    def _delete(self, operations, resource: str, name: str) -> None:
        with translate_errors(resource):
            poller = operations.begin_delete(
                self.resource_group, name, polling_interval=self.poll_interval_sec
            )
        wait_for(poller, resource, self.lro_timeout_sec)

    def create_public_ip(self, name: str) -> PublicAddress:
        created = self._create(
            self.sdk.public_ip_addresses,
            f"publicIPAddresses/{name}",
            name,
            {
                "location": self.location,
                "sku": {"name": "Standard"},
                "public_ip_allocation_method": "Static",
                "public_ip_address_version": "IPv4",
            },
        )
        return PublicAddress(id=created.id, ip_address=created.ip_address)

    def get_public_ip(self, name: str) -> PublicAddress:
        with translate_errors(f"publicIPAddresses/{name}"):
            found = self.sdk.public_ip_addresses.get(self.resource_group, name)
        return PublicAddress(id=found.id, ip_address=found.ip_address)

    def delete_public_ip(self, name: str) -> None:
        self._delete(self.sdk.public_ip_addresses, f"publicIPAddresses/{name}", name)

    def create_security_group(self, name: str, rules: list[dict]) -> str:
        created = self._create(
            self.sdk.network_security_groups,
            f"networkSecurityGroups/{name}",
            name,
            {"location": self.location, "security_rules": rules},
        )
        return created.id

    def delete_security_group(self, name: str) -> None:
        self._delete(
            self.sdk.network_security_groups, f"networkSecurityGroups/{name}", name
        )

    def create_nic(self, name: str, *, public_ip_id: str, nsg_id: str) -> str:
        created = self._create(
            self.sdk.network_interfaces,
            f"networkInterfaces/{name}",
            name,
            {
                "location": self.location,
                "ip_configurations": [
                    {
                        "name": "ipconfig1",
                        "subnet": {"id": self.subnet_id()},
                        "public_ip_address": {"id": public_ip_id},
                        "private_ip_allocation_method": "Dynamic",
                    }
                ],
                "network_security_group": {"id": nsg_id},
            },
        )
        return created.id

    def delete_nic(self, name: str) -> None:
        self._delete(self.sdk.network_interfaces, f"networkInterfaces/{name}", name)
