import ipaddress
import logging
from dataclasses import dataclass

from vm_orchestrator.clients.network import NetworkClient


logger = logging.getLogger(__name__)

PUBLIC_IP_SUFFIX = "-ip"
NIC_SUFFIX = "-nic"
NSG_SUFFIX = "-nsg"

RULE_BASE_PRIORITY = 100
RULE_PRIORITY_STEP = 10

# Inbound admin ports per OS family, in priority order.
ADMIN_PORTS: dict[str, list[tuple[str, int]]] = {
    "unix": [("AllowRequesterSSH", 22), ("AllowRequesterRDP", 3389)],
    "windows": [("AllowRequesterRDP", 3389)],
}


@dataclass(frozen=True)
class BundleNames:
    public_ip: str
    nic: str
    nsg: str


@dataclass
class NetworkBundle:
    public_address: str
    public_ip_id: str
    nsg_id: str
    nic_id: str


def bundle_names(vm_name: str) -> BundleNames:
    return BundleNames(
        public_ip=f"{vm_name}{PUBLIC_IP_SUFFIX}",
        nic=f"{vm_name}{NIC_SUFFIX}",
        nsg=f"{vm_name}{NSG_SUFFIX}",
    )


def requester_prefix(address: str) -> str:
    """Single-host prefix for ``address``.

    Raises ValueError for anything that is not one concrete, routable-looking
    host address.
    """
    ip = ipaddress.ip_address(address.strip())
    if ip.is_unspecified or ip.is_multicast:
        raise ValueError(f"requester address {address!r} is not a single host")
    return f"{ip}/{ip.max_prefixlen}"


def build_security_rules(os_family: str, requester_address: str) -> list[dict]:
    if os_family not in ADMIN_PORTS:
        raise ValueError(f"no admin ports defined for os family {os_family!r}")
    source_prefix = requester_prefix(requester_address)
    rules = []
    for index, (rule_name, port) in enumerate(ADMIN_PORTS[os_family]):
        rules.append(
            {
                "name": rule_name,
                "protocol": "Tcp",
                "source_port_range": "*",
                "destination_port_range": str(port),
                "source_address_prefix": source_prefix,
                "destination_address_prefix": "*",
                "access": "Allow",
                "priority": RULE_BASE_PRIORITY + index * RULE_PRIORITY_STEP,
                "direction": "Inbound",
            }
        )
    return rules


def provision_network(
    network: NetworkClient, vm_name: str, os_family: str, requester_address: str
) -> NetworkBundle:
    names = bundle_names(vm_name)
    rules = build_security_rules(os_family, requester_address)

    logger.info("creating public address vm=%s name=%s", vm_name, names.public_ip)
    public_ip = network.create_public_ip(names.public_ip)
    if not public_ip.ip_address:
        public_ip = network.get_public_ip(names.public_ip)
    if not public_ip.ip_address:
        raise RuntimeError(f"public address {names.public_ip} has no ip allocated")

    logger.info(
        "creating security group vm=%s name=%s rules=%d",
        vm_name,
        names.nsg,
        len(rules),
    )
    nsg_id = network.create_security_group(names.nsg, rules)

    logger.info("creating nic vm=%s name=%s", vm_name, names.nic)
    nic_id = network.create_nic(names.nic, public_ip_id=public_ip.id, nsg_id=nsg_id)

    return NetworkBundle(
        public_address=public_ip.ip_address,
        public_ip_id=public_ip.id,
        nsg_id=nsg_id,
        nic_id=nic_id,
    )
