"""Thin JSON clients for the SDC APIs used by the update procedures."""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

import requests
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from . import __version__
from .models import AGENT_SERVICES, Image, Instance
from .utils.config import SdcAdmConfig

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30


class ClientError(Exception):
    """Error returned by an SDC API, carrying the decoded error body."""

    def __init__(
        self,
        body: Dict[str, Any],
        status_code: Optional[int] = None,
        client_name: Optional[str] = None,
    ) -> None:
        message = body.get("message") if isinstance(body, dict) else None
        super().__init__(message or repr(body))
        self.body = body
        self.status_code = status_code
        self.client_name = client_name


class JsonClient:
    """Minimal JSON-over-HTTP client shared by the API clients below."""

    def __init__(
        self,
        url: str,
        *,
        name: str,
        timeout: float = DEFAULT_TIMEOUT,
        session: Optional[requests.Session] = None,
    ):
        self.url = url.rstrip("/")
        self.name = name
        self.timeout = timeout
        self.session = session or requests.Session()

    def get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        try:
            response = self._get_with_retry(path, params)
        except requests.RequestException as exc:
            raise self._transport_error("GET", path, exc) from exc
        return self._decode(response)

    # Only idempotent reads are retried; a dispatched POST is never replayed.
    @retry(
        retry=retry_if_exception_type((requests.ConnectionError, requests.Timeout)),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    def _get_with_retry(self, path: str, params: Optional[Dict[str, Any]]) -> requests.Response:
        logger.debug("%s GET %s params=%s", self.name, path, params)
        return self.session.get(f"{self.url}{path}", params=params, timeout=self.timeout)

    def post(self, path: str, body: Dict[str, Any]) -> Any:
        logger.debug("%s POST %s body=%s", self.name, path, body)
        try:
            response = self.session.post(f"{self.url}{path}", json=body, timeout=self.timeout)
        except requests.RequestException as exc:
            raise self._transport_error("POST", path, exc) from exc
        return self._decode(response)

    def _transport_error(self, method: str, path: str, exc: Exception) -> ClientError:
        return ClientError(
            {"code": "ConnectionError", "message": f"{method} {self.url}{path} failed: {exc}"},
            client_name=self.name,
        )

    def _decode(self, response: requests.Response) -> Any:
        payload: Any = None
        if response.content:
            try:
                payload = response.json()
            except ValueError:
                payload = None

        if response.status_code >= 400:
            body: Dict[str, Any] = dict(payload) if isinstance(payload, dict) else {}
            if not isinstance(body.get("message"), str):
                body["message"] = f"HTTP {response.status_code} {response.reason or ''}".strip()
            raise ClientError(body, status_code=response.status_code, client_name=self.name)
        return payload


class CnapiClient(JsonClient):
    """Compute node API: servers, their agents and asynchronous tasks."""

    def __init__(self, url: str, **kwargs: Any):
        super().__init__(url, name="cnapi", **kwargs)

    def list_servers(self) -> List[Dict[str, Any]]:
        return self.get("/servers", params={"extras": "agents"}) or []

    def get_server(self, server_uuid: str) -> Dict[str, Any]:
        return self.get(f"/servers/{server_uuid}") or {}

    def get_task(self, task_id: str) -> Dict[str, Any]:
        return self.get(f"/tasks/{task_id}") or {}

    def post_install_agent_task(self, server_uuid: str, image_uuid: str) -> Optional[str]:
        """
        Ask the server's cn-agent to install an agent image.

        Returns the task id, or None when CNAPI did not send one back (a
        cn-agent install restarts the agent that would report it).
        """
        body = self.post(f"/servers/{server_uuid}/install-agent", {"image_uuid": image_uuid})
        task_id = body.get("id") if isinstance(body, dict) else None
        return task_id or None


class VmapiClient(JsonClient):
    """VM inventory API."""

    def __init__(self, url: str, **kwargs: Any):
        super().__init__(url, name="vmapi", **kwargs)

    def list_vms(self, role: str) -> List[Dict[str, Any]]:
        return self.get("/vms", params={"tag.smartdc_role": role, "state": "running"}) or []


class ImgapiClient(JsonClient):
    """Image registry API."""

    def __init__(self, url: str, **kwargs: Any):
        super().__init__(url, name="imgapi", **kwargs)

    def get_image(self, image_uuid: str) -> Image:
        body = self.get(f"/images/{image_uuid}") or {}
        return Image(
            uuid=body.get("uuid", image_uuid),
            name=body.get("name", ""),
            version=body.get("version", ""),
        )


@dataclass
class SdcClients:
    """The pool of API clients shared by a run."""

    cnapi: CnapiClient
    vmapi: VmapiClient
    imgapi: ImgapiClient

    @classmethod
    def from_config(cls, config: SdcAdmConfig) -> "SdcClients":
        session = requests.Session()
        session.headers.update(
            {"Accept": "application/json", "User-Agent": f"sdcadm/{__version__}"}
        )
        options = {"timeout": config.request_timeout, "session": session}
        return cls(
            cnapi=CnapiClient(config.service_url("cnapi"), **options),
            vmapi=VmapiClient(config.service_url("vmapi"), **options),
            imgapi=ImgapiClient(config.service_url("imgapi"), **options),
        )

    def list_instances(self, services: Iterable[str]) -> List[Instance]:
        """
        List running instances of the given services.

        Agents are read from the agent list CNAPI keeps for every server; VM
        based services come from VMAPI, with their version taken from the
        image they run.
        """
        services = list(services)
        instances: List[Instance] = []
        servers: Optional[List[Dict[str, Any]]] = None
        images: Dict[str, Image] = {}

        for service in services:
            if service in AGENT_SERVICES:
                if servers is None:
                    servers = self.cnapi.list_servers()
                for server in servers:
                    for agent in server.get("agents") or []:
                        if agent.get("name") != service:
                            continue
                        instances.append(
                            Instance(
                                service=service,
                                server=server["uuid"],
                                hostname=server.get("hostname"),
                                version=agent.get("version"),
                                image=agent.get("image_uuid"),
                            )
                        )
                continue

            for vm in self.vmapi.list_vms(service):
                image_uuid = vm.get("image_uuid")
                image = None
                if image_uuid:
                    image = images.get(image_uuid)
                    if image is None:
                        image = images[image_uuid] = self.imgapi.get_image(image_uuid)
                instances.append(
                    Instance(
                        service=service,
                        server=vm.get("server_uuid", ""),
                        instance_id=vm.get("uuid"),
                        hostname=vm.get("alias"),
                        version=image.version if image else None,
                        image=image_uuid,
                    )
                )

        logger.debug("Listed %d instance(s) of %s", len(instances), ", ".join(services))
        return instances
