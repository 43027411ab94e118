"""Compute the changes needed to move an agent service to a new image."""

import logging
from dataclasses import replace
from typing import Iterable, List, Optional

from .clients import SdcClients
from .errors import UsageError, sdc_client_errors
from .models import AGENT_SERVICES, Change, Instance, Plan

logger = logging.getLogger(__name__)


def _filter_servers(instances: List[Instance], servers: Iterable[str]) -> List[Instance]:
    selected: List[Instance] = []
    for server in servers:
        matches = [inst for inst in instances if server in (inst.server, inst.hostname)]
        if not matches:
            raise UsageError(f"server {server} has no instance to update")
        for inst in matches:
            if inst not in selected:
                selected.append(inst)
    return selected


def plan_agent_update(
    clients: SdcClients,
    service: str,
    image_uuid: str,
    servers: Optional[Iterable[str]] = None,
) -> Plan:
    """
    Plan the update of ``service`` to image ``image_uuid``.

    Args:
        clients: API clients used to look up the image and current instances
        service: Agent service name (e.g. ``cn-agent``, ``vm-agent``)
        image_uuid: UUID of the target image in IMGAPI
        servers: Optional server UUIDs or hostnames to restrict the update to

    Returns:
        Plan: a single change, or an empty plan when every instance already
        runs the target image
    """
    if service not in AGENT_SERVICES:
        raise UsageError(f'"{service}" is not an agent service')

    with sdc_client_errors():
        image = clients.imgapi.get_image(image_uuid)
    if image.name != service:
        raise UsageError(
            f'image {image.uuid} ({image.name}@{image.version}) is not an image for "{service}"'
        )

    with sdc_client_errors():
        instances = [inst for inst in clients.list_instances([service]) if inst.service == service]
    if servers:
        instances = _filter_servers(instances, servers)

    targets = tuple(replace(inst, image=image.uuid) for inst in instances if inst.image != image.uuid)
    skipped = len(instances) - len(targets)
    if skipped:
        logger.info("%d %s instance(s) already on image %s", skipped, service, image.uuid)
    if not targets:
        return Plan()

    return Plan(changes=(Change(service=service, image=image, insts=targets),))
