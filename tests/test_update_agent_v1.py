import logging
import threading
import time
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Dict, List, Optional, Sequence

import pytest

from sdcadm.clients import ClientError
from sdcadm.errors import MultiError, SDCClientError, UpdateError, UsageError
from sdcadm.models import Change, ExecutionContext, Image, Instance, Plan
from sdcadm.procedures import UpdateAgentV1, coordinate_procedures, run_procedures
from sdcadm.procedures.update_agent_v1 import cnapi_build_stamp, version_at_least

CURRENT_CNAPI = "release-20150410-20150410T013325Z-g1a2b3c"
OLD_CNAPI = "release-20150301-20150301T101010Z-gdeadbee"


class FakeCnapi:
    """CNAPI stand-in: install-agent tasks complete on their second query."""

    def __init__(
        self,
        *,
        dispatch_errors: Sequence[str] = (),
        task_results: Optional[Dict[str, Dict[str, Any]]] = None,
        agent_images: Optional[Dict[str, List[str]]] = None,
        task_ids: bool = True,
    ) -> None:
        self.task_ids = task_ids
        self.dispatch_errors = set(dispatch_errors)
        self.task_results = task_results or {}
        self.agent_images = agent_images or {}
        self.lock = threading.Lock()
        self.posts: List[tuple] = []
        self.task_queries: Dict[str, int] = {}
        self.server_queries: Dict[str, int] = {}
        self.in_flight = 0
        self.max_in_flight = 0

    def post_install_agent_task(self, server_uuid: str, image_uuid: str) -> Optional[str]:
        with self.lock:
            self.posts.append((server_uuid, image_uuid))
            if server_uuid in self.dispatch_errors:
                raise ClientError(
                    {"code": "InternalError", "message": f"cn-agent on {server_uuid} unreachable"},
                    status_code=500,
                    client_name="cnapi",
                )
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        return f"task-{server_uuid}" if self.task_ids else None

    def get_task(self, task_id: str) -> Dict[str, Any]:
        with self.lock:
            count = self.task_queries.get(task_id, 0) + 1
            self.task_queries[task_id] = count
            if count < 2:
                return {"status": "pending", "history": []}
            self.in_flight -= 1
        return self.task_results.get(task_id, {"status": "complete", "history": []})

    def get_server(self, server_uuid: str) -> Dict[str, Any]:
        with self.lock:
            count = self.server_queries.get(server_uuid, 0) + 1
            self.server_queries[server_uuid] = count
            images = self.agent_images[server_uuid]
            image = images[min(count, len(images)) - 1]
        return {"uuid": server_uuid, "agents": [{"name": "cn-agent", "image_uuid": image}]}


class FakeClients:
    def __init__(self, cnapi: FakeCnapi, instances: List[Instance]) -> None:
        self.cnapi = cnapi
        self.instances = instances
        self.list_calls: List[List[str]] = []

    def list_instances(self, services):
        services = list(services)
        self.list_calls.append(services)
        return [inst for inst in self.instances if inst.service in services]


def _cn_agents(*servers: str, version: str = "1.5.2") -> List[Instance]:
    return [
        Instance(service="cn-agent", server=server, version=version, image="img-cn-old")
        for server in servers
    ]


def _inventory(*servers: str, cnapi_version: str = CURRENT_CNAPI) -> List[Instance]:
    return [
        Instance(service="cnapi", server="headnode", version=cnapi_version, instance_id="vm-cnapi"),
        *_cn_agents(*servers),
    ]


def _vm_agent_change(*servers: str, image_uuid: str = "img-vm-2") -> Change:
    return Change(
        service="vm-agent",
        image=Image(uuid=image_uuid, name="vm-agent", version="2.1.0"),
        insts=tuple(
            Instance(service="vm-agent", server=server, version="2.0.0", image=image_uuid)
            for server in servers
        ),
    )


class ProgressLog:
    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.messages: List[str] = []

    def __call__(self, fmt: str, *args: Any) -> None:
        with self.lock:
            self.messages.append(fmt % args)


def _context(clients: FakeClients, tmp_path: Path, changes: Sequence[Change]) -> ExecutionContext:
    return ExecutionContext(
        log=logging.getLogger("test_update_agent_v1"),
        progress=ProgressLog(),
        clients=clients,
        wrk_dir=tmp_path,
        plan=Plan(changes=tuple(changes)),
    )


def _procedure(changes: Sequence[Change], **overrides: Any) -> UpdateAgentV1:
    procedure = UpdateAgentV1(changes, sleep=lambda seconds: None)
    procedure.POLL_INTERVAL_SECONDS = 0
    for name, value in overrides.items():
        setattr(procedure, name, value)
    return procedure


def test_cnapi_build_stamp_uses_second_to_last_field() -> None:
    assert cnapi_build_stamp(CURRENT_CNAPI) == "20150410T013325Z"
    with pytest.raises(UpdateError):
        cnapi_build_stamp("nodashes")


def test_summarize_describes_each_change() -> None:
    procedure = UpdateAgentV1([_vm_agent_change("node-a")])

    assert procedure.summarize() == (
        'update "vm-agent" service to image img-vm-2 (vm-agent@2.1.0)'
    )


def test_construction_requires_agent_changes() -> None:
    with pytest.raises(UsageError):
        UpdateAgentV1([])

    cnapi_change = Change(service="cnapi", image=Image("img", "cnapi", "1"), insts=())
    with pytest.raises(UsageError):
        UpdateAgentV1([cnapi_change])


def test_old_cnapi_blocks_every_dispatch(tmp_path: Path) -> None:
    change = _vm_agent_change("node-a", "node-b")
    cnapi = FakeCnapi()
    clients = FakeClients(cnapi, _inventory("node-a", "node-b", cnapi_version=OLD_CNAPI))
    ctx = _context(clients, tmp_path, [change])

    with pytest.raises(UpdateError) as excinfo:
        _procedure([change]).execute(ctx)

    assert "image for cnapi is too old" in excinfo.value.message
    assert '"20150301T101010Z"' in excinfo.value.message
    assert cnapi.posts == []


def test_missing_cnapi_instance_is_an_update_error(tmp_path: Path) -> None:
    change = _vm_agent_change("node-a")
    cnapi = FakeCnapi()
    clients = FakeClients(cnapi, _cn_agents("node-a"))

    with pytest.raises(UpdateError):
        _procedure([change]).execute(_context(clients, tmp_path, [change]))

    assert cnapi.posts == []


def test_successful_change_reports_no_error(tmp_path: Path) -> None:
    change = _vm_agent_change("node-a", "node-b", "node-c")
    cnapi = FakeCnapi()
    clients = FakeClients(cnapi, _inventory("node-a", "node-b", "node-c"))
    ctx = _context(clients, tmp_path, [change])

    assert _procedure([change]).execute(ctx) is None

    assert sorted(cnapi.posts) == [
        ("node-a", "img-vm-2"),
        ("node-b", "img-vm-2"),
        ("node-c", "img-vm-2"),
    ]
    assert clients.list_calls == [["cnapi", "cn-agent"]]
    assert "Agent vm-agent successfully updated on server node-b" in ctx.progress.messages
    assert ctx.progress.messages[-1].startswith("All the instances have been processed")


def test_cn_agent_update_scenario(tmp_path: Path) -> None:
    image = Image(uuid="img-1", name="cn-agent", version="2.0.0")
    node_a = Instance(service="cn-agent", server="node-a", version="1.5.0", image="img-1")
    node_b = Instance(service="cn-agent", server="node-b", version="1.2.0", image="img-1")
    change = Change(service="cn-agent", image=image, insts=(node_a, node_b))

    cnapi = FakeCnapi(agent_images={"node-a": ["img-0", "img-1"]})
    inventory = [
        Instance(service="cnapi", server="headnode", version=CURRENT_CNAPI),
        Instance(service="cn-agent", server="node-a", version="1.5.0", image="img-0"),
        Instance(service="cn-agent", server="node-b", version="1.2.0", image="img-0"),
    ]
    clients = FakeClients(cnapi, inventory)
    ctx = _context(clients, tmp_path, [change])

    with pytest.raises(MultiError) as excinfo:
        _procedure([change]).execute(ctx)

    errors = excinfo.value.errors
    assert len(errors) == 1
    assert isinstance(errors[0], UpdateError)
    assert "node-b" in errors[0].message
    assert "1.4.0" in errors[0].message
    assert cnapi.posts == [("node-a", "img-1")]
    assert cnapi.server_queries == {"node-a": 2}
    assert cnapi.task_queries == {}
    assert "Agent cn-agent successfully updated on server node-a" in ctx.progress.messages


def test_dispatch_error_does_not_block_siblings(tmp_path: Path) -> None:
    change = _vm_agent_change("node-a", "node-b", "node-c")
    cnapi = FakeCnapi(dispatch_errors=["node-b"])
    clients = FakeClients(cnapi, _inventory("node-a", "node-b", "node-c"))

    with pytest.raises(MultiError) as excinfo:
        _procedure([change]).execute(_context(clients, tmp_path, [change]))

    errors = excinfo.value.errors
    assert len(errors) == 1
    assert isinstance(errors[0], SDCClientError)
    assert "node-b" in errors[0].message
    assert set(cnapi.task_queries) == {"task-node-a", "task-node-c"}
    assert "multiple (1) errors" in excinfo.value.message


def test_failures_are_reported_in_the_order_recorded(tmp_path: Path) -> None:
    image = Image(uuid="img-vm-2", name="vm-agent", version="2.1.0")
    insts = (
        Instance(service="vm-agent", server="node-a", version="2.0.0", image=None),
        Instance(service="vm-agent", server="node-b", version="2.0.0", image="img-vm-2"),
        Instance(service="vm-agent", server="node-c", version="2.0.0", image="img-vm-2"),
        Instance(service="vm-agent", server="node-d", version="2.0.0", image="img-vm-2"),
    )
    change = Change(service="vm-agent", image=image, insts=insts)
    cnapi = FakeCnapi(
        task_results={
            "task-node-d": {
                "status": "failure",
                "history": [{"event": {"error": {"message": "zfs receive failed"}}}],
            }
        }
    )
    inventory = [
        Instance(service="cnapi", server="headnode", version=CURRENT_CNAPI),
        *_cn_agents("node-a", "node-b", "node-d"),
    ]
    clients = FakeClients(cnapi, inventory)

    with pytest.raises(MultiError) as excinfo:
        _procedure([change], CN_CONCUR=1).execute(_context(clients, tmp_path, [change]))

    messages = [err.message for err in excinfo.value.errors]
    assert messages == [
        "Unknown image for vm-agent in server node-a",
        "Unknown version for cn-agent in server node-c",
        "Task task-node-d failed with error: zfs receive failed",
    ]
    assert [server for server, _ in cnapi.posts] == ["node-b", "node-d"]


def test_poll_timeout_is_recorded_per_instance(tmp_path: Path) -> None:
    change = _vm_agent_change("node-a")

    class StuckCnapi(FakeCnapi):
        def get_task(self, task_id: str) -> Dict[str, Any]:
            return {"status": "pending"}

    cnapi = StuckCnapi()
    clients = FakeClients(cnapi, _inventory("node-a"))
    ctx = _context(clients, tmp_path, [change])

    with pytest.raises(MultiError) as excinfo:
        _procedure([change], POLL_MAX_ATTEMPTS=3).execute(ctx)

    assert excinfo.value.errors[0].message.startswith("Timeout(")
    assert any(message.startswith("Timeout(") for message in ctx.progress.messages)


def test_fan_out_respects_concurrency(tmp_path: Path) -> None:
    servers = [f"node-{index:02d}" for index in range(25)]
    change = _vm_agent_change(*servers)
    cnapi = FakeCnapi()
    clients = FakeClients(cnapi, _inventory(*servers))
    procedure = UpdateAgentV1([change], sleep=lambda seconds: time.sleep(0.01))
    procedure.CN_CONCUR = 3

    procedure.execute(_context(clients, tmp_path, [change]))

    assert len(cnapi.posts) == 25
    assert 1 <= cnapi.max_in_flight <= 3


def test_each_change_checks_its_own_precondition(tmp_path: Path) -> None:
    first = _vm_agent_change("node-a")
    second = Change(
        service="net-agent",
        image=Image(uuid="img-net-9", name="net-agent", version="9.0.0"),
        insts=(Instance(service="net-agent", server="node-b", version="8.0.0", image="img-net-9"),),
    )
    cnapi = FakeCnapi(dispatch_errors=["node-b"])
    clients = FakeClients(cnapi, _inventory("node-a", "node-b"))

    with pytest.raises(MultiError) as excinfo:
        _procedure([first, second]).execute(_context(clients, tmp_path, [first, second]))

    assert clients.list_calls == [["cnapi", "cn-agent"], ["cnapi", "cn-agent"]]
    assert [server for server, _ in cnapi.posts] == ["node-a", "node-b"]
    assert "node-b" in excinfo.value.errors[0].message


def test_failed_change_stops_the_plan(tmp_path: Path) -> None:
    first = _vm_agent_change("node-a")
    second = _vm_agent_change("node-b", image_uuid="img-vm-3")
    cnapi = FakeCnapi(dispatch_errors=["node-a"])
    clients = FakeClients(cnapi, _inventory("node-a", "node-b"))

    with pytest.raises(MultiError):
        _procedure([first, second]).execute(_context(clients, tmp_path, [first, second]))

    assert cnapi.posts == [("node-a", "img-vm-2")]


def test_coordinate_procedures_groups_agent_changes() -> None:
    plan = Plan(changes=(_vm_agent_change("node-a"),))

    procedures = coordinate_procedures(plan)

    assert len(procedures) == 1
    assert isinstance(procedures[0], UpdateAgentV1)
    assert coordinate_procedures(Plan()) == []

    with pytest.raises(UsageError):
        coordinate_procedures(
            Plan(changes=(Change(service="imgapi", image=Image("i", "imgapi", "1")),))
        )


def test_run_procedures_stops_at_first_failure(tmp_path: Path) -> None:
    calls: List[str] = []

    class Recorder:
        def __init__(self, name: str, error: Optional[Exception] = None) -> None:
            self.name = name
            self.error = error

        def execute(self, ctx: ExecutionContext) -> None:
            calls.append(self.name)
            if self.error:
                raise self.error

    ctx = _context(FakeClients(FakeCnapi(), []), tmp_path, [])
    procedures = [Recorder("one"), Recorder("two", UpdateError("nope")), Recorder("three")]

    with pytest.raises(UpdateError):
        run_procedures(procedures, ctx)

    assert calls == ["one", "two"]


def test_execution_context_is_frozen(tmp_path: Path) -> None:
    ctx = ExecutionContext(
        log=logging.getLogger("frozen"),
        progress=lambda *args: None,
        clients=SimpleNamespace(),
        wrk_dir=tmp_path,
    )

    with pytest.raises(AttributeError):
        ctx.wrk_dir = Path("/elsewhere")  # type: ignore[misc]


@pytest.mark.parametrize(
    "version, accepted",
    [
        ("1.4.0", True),
        ("1.5.2", True),
        ("1.10.0", True),
        ("2.0.0-rc.1", True),
        ("1.4", True),
        ("1", True),
        ("1.3.9", False),
        ("1.3", False),
        ("1.4.0-rc.1", False),
        ("0.9.0", False),
        ("not-a-version", False),
    ],
)
def test_version_at_least_follows_semver_ordering(version: str, accepted: bool) -> None:
    assert version_at_least(version, "1.4.0") is accepted


@pytest.mark.parametrize(
    "cn_agent_version, dispatched",
    [("1.4.0-rc.1", False), ("1.4", True)],
)
def test_cn_agent_version_gate_edges(
    tmp_path: Path, cn_agent_version: str, dispatched: bool
) -> None:
    change = _vm_agent_change("node-a")
    cnapi = FakeCnapi()
    inventory = [
        Instance(service="cnapi", server="headnode", version=CURRENT_CNAPI),
        Instance(service="cn-agent", server="node-a", version=cn_agent_version, image="img-cn"),
    ]
    clients = FakeClients(cnapi, inventory)
    procedure = _procedure([change])

    if dispatched:
        procedure.execute(_context(clients, tmp_path, [change]))
        assert cnapi.posts == [("node-a", "img-vm-2")]
    else:
        with pytest.raises(MultiError) as excinfo:
            procedure.execute(_context(clients, tmp_path, [change]))
        assert cnapi.posts == []
        assert f"(current version is {cn_agent_version})" in excinfo.value.errors[0].message


def test_cn_agent_update_does_not_need_a_task_id(tmp_path: Path) -> None:
    image = Image(uuid="img-1", name="cn-agent", version="2.0.0")
    node = Instance(service="cn-agent", server="node-a", version="1.5.0", image="img-1")
    change = Change(service="cn-agent", image=image, insts=(node,))
    cnapi = FakeCnapi(agent_images={"node-a": ["img-1"]}, task_ids=False)
    clients = FakeClients(cnapi, [Instance(service="cnapi", server="hn", version=CURRENT_CNAPI)])

    _procedure([change]).execute(_context(clients, tmp_path, [change]))

    assert cnapi.server_queries == {"node-a": 1}


def test_missing_task_id_fails_only_that_server(tmp_path: Path) -> None:
    change = _vm_agent_change("node-a")
    cnapi = FakeCnapi(task_ids=False)
    clients = FakeClients(cnapi, _inventory("node-a"))

    with pytest.raises(MultiError) as excinfo:
        _procedure([change]).execute(_context(clients, tmp_path, [change]))

    assert excinfo.value.errors[0].message == (
        "install_agent on server node-a returned no task id"
    )
    assert cnapi.task_queries == {}


def test_interrupt_stops_dispatch_and_in_flight_polls(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    servers = [f"node-{index}" for index in range(6)]
    change = _vm_agent_change(*servers)

    class StuckCnapi(FakeCnapi):
        def get_task(self, task_id: str) -> Dict[str, Any]:
            with self.lock:
                self.task_queries[task_id] = self.task_queries.get(task_id, 0) + 1
            return {"status": "pending"}

    cnapi = StuckCnapi()
    clients = FakeClients(cnapi, _inventory(*servers))
    procedure = UpdateAgentV1([change], sleep=lambda seconds: time.sleep(0.01))
    procedure.CN_CONCUR = 2

    def interrupted_wait(queue, timeout=None):
        deadline = time.monotonic() + 5
        while len(cnapi.posts) < 2 and time.monotonic() < deadline:
            time.sleep(0.01)
        raise KeyboardInterrupt

    monkeypatch.setattr("sdcadm.procedures.update_agent_v1.WorkQueue.wait", interrupted_wait)

    with pytest.raises(KeyboardInterrupt):
        procedure.execute(_context(clients, tmp_path, [change]))

    time.sleep(0.3)
    polls = dict(cnapi.task_queries)
    time.sleep(0.1)
    assert len(cnapi.posts) == 2
    assert cnapi.task_queries == polls
