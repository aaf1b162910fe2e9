"""Provisioning template rendering and creation.

A machine gets exactly one Template, named after the machine. Its data is
either the machine's templateOverride, verbatim, or a default workflow that:

1. streams the OS image onto the hardware's first disk,
2. writes a cloud-init datasource config pointing at the metadata service
   onto that disk's first partition,
3. kexecs into the installed kernel.

The image URL comes from a Go-style format string such as
``{{.BaseRegistry}}/{{.OSDistro}}-{{.OSVersion}}.raw.gz``; only plain
``{{.Field}}`` actions are supported.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any

import yaml

from .config import Config
from .errors import AlreadyExistsError, MissingDiskConfigurationError, NotFoundError, RenderError
from .models import Hardware, ObjectMeta, Template, TemplateSpec, TinkerbellMachine
from .store import ResourceStore

logger = logging.getLogger(__name__)

# Devices whose partitions take a "p" separator
_NVME_DEVICE = re.compile(r"^/dev/nvme\d+n\d+$")
_EMMC_DEVICE = re.compile(r"^/dev/mmcblk\d+$")

_ACTION = re.compile(r"\{\{(.*?)\}\}", re.DOTALL)
_FIELD_ACTION = re.compile(r"^\s*\.([A-Za-z_][A-Za-z0-9_]*)\s*$")

IMAGE2DISK_ACTION_IMAGE = "quay.io/tinkerbell-actions/image2disk:v1.0.0"
WRITEFILE_ACTION_IMAGE = "quay.io/tinkerbell-actions/writefile:v1.0.0"
KEXEC_ACTION_IMAGE = "quay.io/tinkerbell-actions/kexec:v1.0.0"
WAITDAEMON_ACTION_IMAGE = "ghcr.io/jacobweinstock/waitdaemon:0.2.0"

WORKFLOW_GLOBAL_TIMEOUT_SECONDS = 6000


def first_partition(device: str) -> str:
    """Name of the first partition on ``device``.

    >>> first_partition("/dev/nvme0n1")
    '/dev/nvme0n1p1'
    >>> first_partition("/dev/sda")
    '/dev/sda1'
    """
    if _NVME_DEVICE.match(device) or _EMMC_DEVICE.match(device):
        return f"{device}p1"
    return f"{device}1"


def render_format(text: str, fields: dict[str, str]) -> str:
    """Substitute ``{{.Field}}`` actions in ``text`` from ``fields``.

    Raises:
        RenderError: On an unknown field, an action other than a plain field
            reference, or an unclosed action.
    """
    rendered: list[str] = []
    position = 0
    for match in _ACTION.finditer(text):
        rendered.append(text[position : match.start()])
        field_match = _FIELD_ACTION.match(match.group(1))
        if field_match is None:
            raise RenderError(
                f"unsupported action {match.group(0)!r} in {text!r}", format=text
            )
        name = field_match.group(1)
        if name not in fields:
            raise RenderError(f"can't evaluate field {name} in {text!r}", format=text)
        rendered.append(fields[name])
        position = match.end()

    tail = text[position:]
    if "{{" in tail:
        raise RenderError(f"unclosed action in {text!r}", format=text)
    rendered.append(tail)
    return "".join(rendered)


def image_url(
    image_format: str,
    base_registry: str,
    os_distro: str,
    os_version: str,
    kubernetes_version: str,
) -> str:
    """Render an image lookup format.

    The distro is lower-cased and dots are stripped from the OS version, so
    ``Ubuntu``/``20.04`` become ``ubuntu``/``2004``.
    """
    return render_format(
        image_format,
        {
            "BaseRegistry": base_registry,
            "OSDistro": os_distro.lower(),
            "OSVersion": os_version.replace(".", ""),
            "KubernetesVersion": kubernetes_version,
        },
    )


class _TemplateDumper(yaml.SafeDumper):
    pass


def _represent_str(dumper: yaml.SafeDumper, value: str) -> yaml.ScalarNode:
    # Multi-line file contents read better as literal blocks
    if "\n" in value:
        return dumper.represent_scalar("tag:yaml.org,2002:str", value, style="|")
    return dumper.represent_scalar("tag:yaml.org,2002:str", value)


_TemplateDumper.add_representer(str, _represent_str)


CLOUD_INIT_DATASOURCE = """\
datasource:
  Ec2:
    metadata_urls: ["{metadata_url}"]
    strict_id: false
system_info:
  default_user:
    name: tink
    groups: [wheel, adm]
    sudo: ["ALL=(ALL) NOPASSWD:ALL"]
    shell: /bin/bash
manage_etc_hosts: localhost
warnings:
  dsid_missing_source: off
"""


@dataclass(frozen=True)
class WorkflowTemplate:
    """Parameters of the default provisioning workflow."""

    name: str
    metadata_url: str
    image_url: str
    dest_disk: str
    dest_partition: str

    def _write_file(self, name: str, path: str, contents: str) -> dict[str, Any]:
        return {
            "name": name,
            "image": WRITEFILE_ACTION_IMAGE,
            "timeout": 90,
            "environment": {
                "DEST_DISK": self.dest_partition,
                "FS_TYPE": "ext4",
                "DEST_PATH": path,
                "UID": "0",
                "GID": "0",
                "MODE": "0600",
                "DIRMODE": "0700",
                "CONTENTS": contents,
            },
        }

    def to_dict(self) -> dict[str, Any]:
        actions = [
            {
                "name": "stream-image",
                "image": IMAGE2DISK_ACTION_IMAGE,
                "timeout": 600,
                "environment": {
                    "DEST_DISK": self.dest_disk,
                    "IMG_URL": self.image_url,
                    "COMPRESSED": "true",
                },
            },
            self._write_file(
                "add-tink-cloud-init-config",
                "/etc/cloud/cloud.cfg.d/10_tinkerbell.cfg",
                CLOUD_INIT_DATASOURCE.format(metadata_url=self.metadata_url),
            ),
            self._write_file(
                "add-tink-cloud-init-ds-config",
                "/etc/cloud/ds-identify.cfg",
                "datasource: Ec2\n",
            ),
            {
                "name": "kexec-image",
                "image": WAITDAEMON_ACTION_IMAGE,
                "timeout": 90,
                "pid": "host",
                "environment": {
                    "BLOCK_DEVICE": self.dest_partition,
                    "FS_TYPE": "ext4",
                    "IMAGE": KEXEC_ACTION_IMAGE,
                    "WAIT_SECONDS": "10",
                },
                "volumes": ["/var/run/docker.sock:/var/run/docker.sock"],
            },
        ]
        return {
            "version": "0.1",
            "name": self.name,
            "global_timeout": WORKFLOW_GLOBAL_TIMEOUT_SECONDS,
            "tasks": [
                {
                    "name": self.name,
                    # Resolved by the workflow engine from the workflow's hardwareMap
                    "worker": "{{.device_1}}",
                    "volumes": [
                        "/dev:/dev",
                        "/dev/console:/dev/console",
                        "/lib/firmware:/lib/firmware:ro",
                    ],
                    "actions": actions,
                }
            ],
        }

    def render(self) -> str:
        try:
            return yaml.dump(
                self.to_dict(), Dumper=_TemplateDumper, sort_keys=False, default_flow_style=False
            )
        except yaml.YAMLError as e:
            raise RenderError(f"rendering template {self.name}: {e}", template=self.name) from e


class TemplateEnsurer:
    """Makes sure the machine's Template exists, creating it once."""

    def __init__(self, store: ResourceStore, config: Config) -> None:
        self._store = store
        self._config = config

    def exists(self, machine: TinkerbellMachine) -> bool:
        try:
            self._store.get(Template, machine.namespace, machine.name)
        except NotFoundError:
            return False
        return True

    def image_url(self, machine: TinkerbellMachine) -> str:
        """Resolve the machine's image URL; machine fields beat cluster defaults.

        Raises:
            RenderError: If no format resolves or the format does not render.
        """
        spec = machine.spec
        defaults = self._config.image_lookup

        image_format = spec.image_lookup_format or defaults.format
        if not image_format:
            raise RenderError(
                f"no image lookup format for machine {machine.namespace}/{machine.name}",
                machine=f"{machine.namespace}/{machine.name}",
            )

        return image_url(
            image_format,
            spec.image_lookup_base_registry or defaults.base_registry,
            spec.image_lookup_os_distro or defaults.os_distro,
            spec.image_lookup_os_version or defaults.os_version,
            spec.version,
        )

    def render(self, hardware: Hardware, machine: TinkerbellMachine) -> str:
        """Template data for the machine.

        Raises:
            MissingDiskConfigurationError: If the hardware has no disks.
            RenderError: If the default template cannot be rendered.
        """
        if not hardware.spec.disks:
            raise MissingDiskConfigurationError(
                f"hardware {hardware.namespace}/{hardware.name} has no disk configuration",
                hardware=f"{hardware.namespace}/{hardware.name}",
            )

        if machine.spec.template_override:
            return machine.spec.template_override

        target_disk = hardware.spec.disks[0].device
        return WorkflowTemplate(
            name=machine.name,
            metadata_url=self._config.metadata_url,
            image_url=self.image_url(machine),
            dest_disk=target_disk,
            dest_partition=first_partition(target_disk),
        ).render()

    def ensure(self, hardware: Hardware, machine: TinkerbellMachine) -> bool:
        """Create the template if it does not exist. Returns True if created."""
        if self.exists(machine):
            return False

        logger.info(
            "Template for machine does not exist, creating",
            extra={"machine": f"{machine.namespace}/{machine.name}"},
        )
        template = Template(
            metadata=ObjectMeta(
                name=machine.name,
                namespace=machine.namespace,
                owner_references=[machine.owner_reference()],
            ),
            spec=TemplateSpec(data=self.render(hardware, machine)),
        )

        try:
            self._store.create(template)
        except AlreadyExistsError:
            logger.info(
                "Template created concurrently, nothing to do",
                extra={"machine": f"{machine.namespace}/{machine.name}"},
            )
            return False
        return True
