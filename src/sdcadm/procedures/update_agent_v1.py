"""
Procedure for updating the agent services installed on every server.

For each change the procedure checks that CNAPI is recent enough to run agent
installs, then asks CNAPI to install the new image on every target server,
``CN_CONCUR`` servers at a time. A failure on one server never stops the
others; all of them are reported together once the change has been processed.
"""

import logging
import threading
import time
from functools import partial
from typing import Callable, Dict, List, Sequence, Tuple

from packaging.version import InvalidVersion, Version

from ..errors import (
    ErrorCollector,
    InternalError,
    SdcAdmError,
    UpdateError,
    UsageError,
    sdc_client_errors,
)
from ..models import CN_AGENT, Change, ExecutionContext, Instance
from ..polling import (
    DEFAULT_POLL_INTERVAL_SECONDS,
    DEFAULT_POLL_MAX_ATTEMPTS,
    wait_for_agent_image,
    wait_for_task,
)
from ..work_queue import WorkQueue
from .procedure import Procedure

logger = logging.getLogger(__name__)

CNAPI = "cnapi"


def version_at_least(version: str, minimum: str) -> bool:
    """
    Return True when ``version`` is ``minimum`` or newer.

    Pre-releases rank below their release (``1.4.0-rc.1`` < ``1.4.0``). A
    partial version stands for the whole series it names, so ``1.4`` covers
    ``1.4.0`` and is accepted. Unparseable versions are never accepted.
    """
    try:
        parsed = Version(version)
    except InvalidVersion:
        return False
    floor = Version(minimum)
    width = len(parsed.release)
    if width < len(floor.release) and not parsed.is_prerelease:
        return parsed.release >= floor.release[:width]
    return parsed >= floor


def cnapi_build_stamp(version: str) -> str:
    """
    Return the build timestamp embedded in a CNAPI image version.

    Versions look like ``release-20150410-20150410T013325Z-g1a2b3c4``: the
    build stamp is the second to last dash separated field. Nothing else about
    the format is checked, so a differently shaped version yields a wrong
    stamp rather than an error.
    """
    parts = version.split("-")
    if len(parts) < 2:
        raise UpdateError(f'cannot read the build date of cnapi image version "{version}"')
    return parts[-2]


class UpdateAgentV1(Procedure):
    """Update one or more agent services across the servers they run on."""

    # Minimal CNAPI image build able to run install-agent tasks.
    MIN_CNAPI_VERSION = "20150407T172714Z"
    # First cn-agent release able to run install_agent tasks.
    MIN_CN_AGENT_VERSION = "1.4.0"
    # Servers updated in parallel.
    CN_CONCUR = 10

    POLL_INTERVAL_SECONDS = DEFAULT_POLL_INTERVAL_SECONDS
    POLL_MAX_ATTEMPTS = DEFAULT_POLL_MAX_ATTEMPTS

    def __init__(
        self,
        changes: Sequence[Change],
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if not changes:
            raise UsageError("UpdateAgentV1 requires at least one change")
        not_agents = sorted({change.service for change in changes if not change.is_agent})
        if not_agents:
            raise UsageError(f"UpdateAgentV1 only updates agents, not: {', '.join(not_agents)}")
        self.changes: Tuple[Change, ...] = tuple(changes)
        self._sleep = sleep
        self._clock = clock

    def summarize(self) -> str:
        lines: List[str] = []
        for change in self.changes:
            img = change.image
            lines.append(
                f'update "{change.service}" service to image {img.uuid} ({img.name}@{img.version})'
            )
        return "\n".join(lines)

    def execute(self, ctx: ExecutionContext) -> None:
        for change in self.changes:
            self._update_agent(ctx, change)

    def _update_agent(self, ctx: ExecutionContext, change: Change) -> None:
        ctx.log.debug(
            "Updating agent %s to image %s on %d server(s)",
            change.service,
            change.image.uuid,
            len(change.insts),
        )
        cn_agents = self._check_min_cnapi_version(ctx)
        self._update_agent_on_servers(ctx, change, cn_agents)

    def _check_min_cnapi_version(self, ctx: ExecutionContext) -> Dict[str, Instance]:
        """Fail unless CNAPI can run agent installs; return cn-agent instances by server."""
        ctx.progress("Verifying that CNAPI is able to run agent updates")
        with sdc_client_errors():
            instances = ctx.clients.list_instances([CNAPI, CN_AGENT])

        cnapi_insts = [inst for inst in instances if inst.service == CNAPI]
        if not cnapi_insts:
            raise UpdateError("no cnapi instance found: cannot verify it is able to run agent updates")

        current = cnapi_build_stamp(cnapi_insts[0].version or "")
        if self.MIN_CNAPI_VERSION > current:
            raise UpdateError(
                "image for cnapi is too old for `sdcadm update agents` "
                f'(min image build date is "{self.MIN_CNAPI_VERSION}", '
                f'current image build date is "{current}")'
            )

        return {inst.server: inst for inst in instances if inst.service == CN_AGENT}

    def _update_agent_on_servers(
        self, ctx: ExecutionContext, change: Change, cn_agents: Dict[str, Instance]
    ) -> None:
        ctx.progress("Proceeding with the individual agent updates on each server")
        errors = ErrorCollector()
        aborted = threading.Event()
        queue: WorkQueue[Instance] = WorkQueue(
            partial(self._update_instance, ctx, change, cn_agents, errors, aborted),
            self.CN_CONCUR,
            name=f"update-{change.service}",
        )
        queue.push(change.insts)
        queue.close()
        try:
            queue.wait()
        except BaseException:
            # Interrupted: servers not started yet are dropped, in-flight polls
            # stop at their next wake-up.
            aborted.set()
            queue.abort()
            raise

        ctx.progress(
            "All the instances have been processed. Errors, if any, will be reported below."
        )
        errors.raise_if_any()

    def _update_instance(
        self,
        ctx: ExecutionContext,
        change: Change,
        cn_agents: Dict[str, Instance],
        errors: ErrorCollector,
        aborted: threading.Event,
        inst: Instance,
    ) -> None:
        ctx.log.debug("Updating instance %s", inst)
        try:
            self._install_agent(ctx, change, cn_agents, aborted, inst)
        except SdcAdmError as err:
            errors.append(err)
        except Exception as exc:  # pragma: no cover
            errors.append(
                InternalError(
                    f"Unexpected error updating {inst.service} on server {inst.server}: {exc}",
                    cause=exc,
                )
            )

    def _install_agent(
        self,
        ctx: ExecutionContext,
        change: Change,
        cn_agents: Dict[str, Instance],
        aborted: threading.Event,
        inst: Instance,
    ) -> None:
        ctx.progress("Updating %s on server %s", inst.service, inst.server)

        cn_agent = inst if inst.service == CN_AGENT else cn_agents.get(inst.server)

        if not inst.image:
            raise UpdateError(f"Unknown image for {inst.service} in server {inst.server}")

        if cn_agent is None or not cn_agent.version:
            raise UpdateError(f"Unknown version for cn-agent in server {inst.server}")

        if not version_at_least(cn_agent.version, self.MIN_CN_AGENT_VERSION):
            raise UpdateError(
                f"Invalid cn-agent version in server {inst.server}. Minimal version to run "
                f"agent updates is {self.MIN_CN_AGENT_VERSION} "
                f"(current version is {cn_agent.version})"
            )

        cnapi = ctx.clients.cnapi
        with sdc_client_errors(CNAPI):
            task_id = cnapi.post_install_agent_task(inst.server, change.image.uuid)

        ctx.progress("Waiting for install_agent task to complete on server %s", inst.server)
        poll_options = {
            "interval": self.POLL_INTERVAL_SECONDS,
            "max_attempts": self.POLL_MAX_ATTEMPTS,
            "client_name": CNAPI,
            "progress": ctx.progress,
            "sleep": partial(self._sleep_unless_aborted, aborted),
            "clock": self._clock,
        }
        # cn-agent restarts itself while installing, so its task never reports
        # back; watch the server's agent list instead.
        if inst.service == CN_AGENT:
            wait_for_agent_image(cnapi, inst.server, CN_AGENT, change.image.uuid, **poll_options)
        elif task_id is None:
            raise UpdateError(f"install_agent on server {inst.server} returned no task id")
        else:
            wait_for_task(cnapi, task_id, **poll_options)

        ctx.progress("Agent %s successfully updated on server %s", inst.service, inst.server)

    def _sleep_unless_aborted(self, aborted: threading.Event, seconds: float) -> None:
        self._sleep(seconds)
        if aborted.is_set():
            raise UpdateError("agent update interrupted")
