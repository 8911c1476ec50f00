import base64
import logging
import re
import secrets
import string
import textwrap
import threading
import time
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy.exc import IntegrityError

from vm_orchestrator.clients.compute import ComputeClient
from vm_orchestrator.clients.network import NetworkClient
from vm_orchestrator.config import get_settings
from vm_orchestrator.db import session_scope
from vm_orchestrator.errors import (
    AlreadyExists,
    InvalidRequest,
    ProvisioningFailed,
    QuotaExceeded,
    UnsupportedOS,
)
from vm_orchestrator.metrics import metrics
from vm_orchestrator.models import OSVariant, VMStatus
from vm_orchestrator.repositories import (
    count_active,
    mark_for_cleanup,
    now_utc,
    reserve_name,
    transition_status,
    write_event,
)
from vm_orchestrator.schemas import Credentials, VMStarted
from vm_orchestrator.services.lifecycle import resolve_duration, teardown_resources
from vm_orchestrator.services.network import provision_network, requester_prefix


logger = logging.getLogger(__name__)

VM_NAME_PATTERN = re.compile(r"^[a-z0-9][a-z0-9-]{0,62}$")
WINDOWS_COMPUTER_NAME_MAX = 15
PASSWORD_LENGTH = 20
# Safe inside single-quoted YAML and single-quoted PowerShell strings.
PASSWORD_SYMBOLS = "!#%*+-=?@^_"

# Quota check and reservation run as one step per process. Separate worker
# processes can still overshoot max_active_vms by their number of in-flight
# creates.
_reservation_lock = threading.Lock()


@dataclass(frozen=True)
class OSImage:
    family: str
    image_reference: dict


OS_IMAGES: dict[str, OSImage] = {
    OSVariant.UBUNTU.value: OSImage(
        family="unix",
        image_reference={
            "publisher": "Canonical",
            "offer": "0001-com-ubuntu-server-focal",
            "sku": "20_04-lts-gen2",
            "version": "latest",
        },
    ),
    OSVariant.KALI.value: OSImage(
        family="unix",
        image_reference={
            "publisher": "kali-linux",
            "offer": "kali",
            "sku": "kali-2024-2",
            "version": "latest",
        },
    ),
    OSVariant.WINDOWS10.value: OSImage(
        family="windows",
        image_reference={
            "publisher": "MicrosoftWindowsDesktop",
            "offer": "Windows-10",
            "sku": "win10-22h2-pro-g2",
            "version": "latest",
        },
    ),
}


def resolve_os(os_variant: str) -> OSImage:
    image = OS_IMAGES.get((os_variant or "").strip().lower())
    if image is None:
        supported = ", ".join(sorted(OS_IMAGES))
        raise UnsupportedOS(
            f"unsupported os variant {os_variant!r}; expected one of: {supported}"
        )
    return image


def generate_password(length: int = PASSWORD_LENGTH) -> str:
    classes = [
        string.ascii_lowercase,
        string.ascii_uppercase,
        string.digits,
        PASSWORD_SYMBOLS,
    ]
    alphabet = "".join(classes)
    chars = [secrets.choice(group) for group in classes]
    chars.extend(secrets.choice(alphabet) for _ in range(length - len(chars)))
    secrets.SystemRandom().shuffle(chars)
    return "".join(chars)


def default_vm_name() -> str:
    return f"vm-{int(time.time() * 1000)}"


def computer_name(vm_name: str, os_family: str) -> str:
    if os_family == "windows":
        return vm_name[:WINDOWS_COMPUTER_NAME_MAX].rstrip("-") or "vm"
    return vm_name


def build_unix_cloud_init(username: str, password: str) -> str:
    return textwrap.dedent(
        f"""\
        #cloud-config
        package_update: true
        packages:
          - xrdp
          - xfce4
        ssh_pwauth: true
        users:
          - name: {username}
            sudo: ALL=(ALL) NOPASSWD:ALL
            groups: [users, sudo]
            shell: /bin/bash
            lock_passwd: false
            plain_text_passwd: '{password}'
        runcmd:
          - [ /usr/bin/env, bash, -c, "echo xfce4-session > /etc/skel/.xsession" ]
          - [ systemctl, enable, --now, xrdp ]
        """
    )


def build_windows_startup_script(username: str, password: str) -> str:
    return textwrap.dedent(
        f"""\
        <powershell>
        $ErrorActionPreference = 'Stop'
        $User = '{username}'
        $Secret = ConvertTo-SecureString '{password}' -AsPlainText -Force
        if (-not (Get-LocalUser -Name $User -ErrorAction SilentlyContinue)) {{
            New-LocalUser -Name $User -Password $Secret -PasswordNeverExpires
        }}
        Add-LocalGroupMember -Group 'Administrators' -Member $User -ErrorAction SilentlyContinue
        Set-ItemProperty -Path 'HKLM:\\System\\CurrentControlSet\\Control\\Terminal Server' -Name 'fDenyTSConnections' -Value 0
        Enable-NetFirewallRule -DisplayGroup 'Remote Desktop'
        </powershell>
        """
    )


def build_boot_customization(os_family: str, username: str, password: str) -> str:
    if os_family == "windows":
        payload = build_windows_startup_script(username, password)
    else:
        payload = build_unix_cloud_init(username, password)
    return base64.b64encode(payload.encode("utf-8")).decode("ascii")


def _reserve(
    vm_name: str, os_variant: str, requester_address: str, duration: int
) -> None:
    settings = get_settings()
    # The sweeper must not reap a create that is still in flight.
    expires_at = now_utc() + timedelta(
        seconds=settings.provisioning_grace_sec + duration
    )
    try:
        with _reservation_lock, session_scope() as session:
            active = count_active(session)
            if active >= settings.max_active_vms:
                raise QuotaExceeded(
                    f"active vm limit reached ({active}/{settings.max_active_vms})",
                    vm_name=vm_name,
                )
            if not reserve_name(
                session, vm_name, os_variant, requester_address, expires_at
            ):
                raise AlreadyExists(f"vm {vm_name} already exists", vm_name=vm_name)
            write_event(
                session,
                "vm.reserved",
                {"os_variant": os_variant, "requester_address": requester_address},
                vm_name,
            )
    except IntegrityError as exc:
        raise AlreadyExists(f"vm {vm_name} already exists", vm_name=vm_name) from exc


def _rollback(
    vm_name: str,
    compute: ComputeClient,
    network: NetworkClient,
    stage: str,
    detail: str,
) -> None:
    failures = teardown_resources(vm_name, compute, network)
    last_error = f"{stage}: {detail}"
    with session_scope() as session:
        if failures:
            logger.warning(
                "rollback incomplete vm=%s failed_steps=%d; left for the sweeper",
                vm_name,
                len(failures),
            )
            mark_for_cleanup(session, vm_name, last_error)
        else:
            transition_status(
                session, vm_name, VMStatus.DELETED.value, last_error=last_error
            )
        write_event(
            session,
            "vm.provision_failed",
            {"stage": stage, "error": detail, "cleanup_failures": failures},
            vm_name,
        )
    metrics.inc("vm_provision_failures_total")


def create_vm(
    *,
    os_variant: str,
    requester_address: str,
    compute: ComputeClient,
    network: NetworkClient,
    name: str | None = None,
    duration_sec: int | None = None,
) -> VMStarted:
    settings = get_settings()
    image = resolve_os(os_variant)
    variant = os_variant.strip().lower()
    vm_name = name or default_vm_name()
    if not VM_NAME_PATTERN.match(vm_name):
        raise InvalidRequest(
            f"invalid vm name {vm_name!r}: lowercase letters, digits and '-' only",
            vm_name=vm_name,
        )
    try:
        requester_prefix(requester_address)
    except ValueError as exc:
        raise InvalidRequest(f"unusable requester address: {exc}") from exc
    duration = resolve_duration(duration_sec)

    _reserve(vm_name, variant, requester_address, duration)
    logger.info(
        "provisioning vm=%s os=%s requester=%s duration_sec=%d",
        vm_name,
        variant,
        requester_address,
        duration,
    )

    username = settings.admin_username
    password = generate_password()
    custom_data = build_boot_customization(image.family, username, password)

    stage = "network"
    try:
        bundle = provision_network(network, vm_name, image.family, requester_address)
        stage = "vm"
        compute.create_or_update_vm(
            vm_name,
            image_reference=image.image_reference,
            computer_name=computer_name(vm_name, image.family),
            admin_username=username,
            admin_password=password,
            custom_data_b64=custom_data,
            nic_id=bundle.nic_id,
            tags={"managed-by": "vm-orchestrator", "os-variant": variant},
        )
    except Exception as exc:  # noqa: BLE001
        detail = str(exc).replace(password, "***")
        logger.error("provisioning failed vm=%s stage=%s: %s", vm_name, stage, detail)
        _rollback(vm_name, compute, network, stage, detail)
        raise ProvisioningFailed(vm_name=vm_name, stage=stage, detail=detail) from exc

    expires_at = now_utc() + timedelta(seconds=duration)
    with session_scope() as session:
        running = transition_status(
            session,
            vm_name,
            VMStatus.RUNNING.value,
            public_address=bundle.public_address,
            username=username,
            password=password,
            expires_at=expires_at,
            last_error=None,
        )
        if running:
            write_event(
                session,
                "vm.created",
                {
                    "os_variant": variant,
                    "public_address": bundle.public_address,
                    "expires_at": expires_at.isoformat(),
                },
                vm_name,
            )
    if not running:
        teardown_resources(vm_name, compute, network)
        raise ProvisioningFailed(
            vm_name=vm_name, stage="record", detail="vm was deleted while provisioning"
        )

    metrics.inc("vms_created_total")
    logger.info(
        "vm running vm=%s address=%s expires_at=%s",
        vm_name,
        bundle.public_address,
        expires_at.isoformat(),
    )
    return VMStarted(
        name=vm_name,
        public_address=bundle.public_address,
        status=VMStatus.RUNNING.value,
        os_variant=variant,
        credentials=Credentials(username=username, password=password),
        expires_at=expires_at,
    )
