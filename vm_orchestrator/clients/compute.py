from dataclasses import dataclass

from azure.mgmt.compute import ComputeManagementClient

from vm_orchestrator.clients.arm import translate_errors, wait_for


@dataclass
class InstanceState:
    power_state: str
    provisioning_state: str | None


class ComputeClient:
    def __init__(
        self,
        sdk: ComputeManagementClient,
        *,
        resource_group: str,
        location: str,
        vm_size: str,
        poll_interval_sec: float = 5.0,
        lro_timeout_sec: int = 1800,
    ):
        self.sdk = sdk
        self.resource_group = resource_group
        self.location = location
        self.vm_size = vm_size
        self.poll_interval_sec = poll_interval_sec
        self.lro_timeout_sec = lro_timeout_sec

    def create_or_update_vm(
        self,
        vm_name: str,
        *,
        image_reference: dict,
        computer_name: str,
        admin_username: str,
        admin_password: str,
        custom_data_b64: str,
        nic_id: str,
        tags: dict[str, str] | None = None,
    ) -> str:
        parameters = {
            "location": self.location,
            "tags": tags or {},
            "hardware_profile": {"vm_size": self.vm_size},
            "storage_profile": {
                "image_reference": image_reference,
                "os_disk": {"create_option": "FromImage", "delete_option": "Delete"},
            },
            "os_profile": {
                "computer_name": computer_name,
                "admin_username": admin_username,
                "admin_password": admin_password,
                "custom_data": custom_data_b64,
            },
            "network_profile": {
                "network_interfaces": [{"id": nic_id, "primary": True}]
            },
        }
        resource = f"virtualMachines/{vm_name}"
        with translate_errors(resource):
            poller = self.sdk.virtual_machines.begin_create_or_update(
                self.resource_group,
                vm_name,
                parameters,
                polling_interval=self.poll_interval_sec,
            )
        vm = wait_for(poller, resource, self.lro_timeout_sec)
        return vm.id

    def power_off(self, vm_name: str) -> None:
        resource = f"virtualMachines/{vm_name}"
        with translate_errors(resource):
            poller = self.sdk.virtual_machines.begin_power_off(
                self.resource_group, vm_name, polling_interval=self.poll_interval_sec
            )
        wait_for(poller, resource, self.lro_timeout_sec)

    def delete_vm(self, vm_name: str) -> None:
        resource = f"virtualMachines/{vm_name}"
        with translate_errors(resource):
            poller = self.sdk.virtual_machines.begin_delete(
                self.resource_group, vm_name, polling_interval=self.poll_interval_sec
            )
        wait_for(poller, resource, self.lro_timeout_sec)

    def instance_state(self, vm_name: str) -> InstanceState:
        with translate_errors(f"virtualMachines/{vm_name}"):
            view = self.sdk.virtual_machines.instance_view(self.resource_group, vm_name)
        power_state = "unknown"
        provisioning_state = None
        for status in view.statuses or []:
            code = status.code or ""
            display = status.display_status or code.split("/", 1)[-1]
            if code.startswith("PowerState/"):
                power_state = display
            elif code.startswith("ProvisioningState/"):
                provisioning_state = display
        return InstanceState(
            power_state=power_state, provisioning_state=provisioning_state
        )
