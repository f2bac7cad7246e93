#!/usr/bin/env python3
"""kube-bt-sync - Kubernetes Ingress to BaoTa panel reverse-proxy sync

Keeps Kubernetes Ingress objects and the sites of a BaoTa (宝塔) web panel in
step. Every Ingress carrying the opt-in annotation gets a panel site whose
reverse proxy points at the DDNS endpoint of the cluster. Sites removed by hand
on the panel are propagated back by deleting the Ingress.

Ingress annotations:
    kube-bt-sync.io/baota-sync   "true" to include the Ingress
    kube-bt-sync.io/ddns-port    Upstream port override for this Ingress

Environment variables:

    BaoTa panel:
        BAOTA_URL              Panel base URL (default: http://127.0.0.1:8888)
        BAOTA_API_KEY          Panel API key used to sign requests (required)

    Upstream:
        DDNS_HOST              Host the panel proxies to (default: home.example.com)
        DEFAULT_PORT           Upstream port when no ddns-port annotation is set
                               (default: 38333)

    Runtime:
        SYNC_MODE              "once" or "watch" (polling loop) (default: watch)
        SYNC_INTERVAL_SEC      Seconds between sync passes in watch mode (default: 30)
        LOG_LEVEL              DEBUG, INFO, WARNING, ERROR (default: INFO)
        KUBECONFIG             Kubeconfig used when not running inside the cluster
                               (default: ~/.kube/config)

Sync passes:
    Every pass lists the opted-in Ingresses and makes sure the panel has a site
    and a reverse proxy for each host that is not yet known to be synced. The
    first pass and every 10th pass afterwards are deep checks: they also list
    the panel sites, and a host that was synced earlier but no longer exists on
    the panel has its Ingress deleted.

Dashboard:
    DashboardBackend is the integration surface for an admin UI. It is not
    started by main(); a UI process builds it from the same SyncEngine and
    SyncScheduler and calls its operations (route statuses, route deletion,
    manifest apply, namespace and service listing, system check).
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import socket
import sys
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Set, Tuple

import requests
import urllib3
import yaml
from kubernetes import client as k8s_client
from kubernetes import config as k8s_config
from kubernetes.client.rest import ApiException

# =============================================================================
# Runtime Configuration
# =============================================================================

SYNC_MODE = os.getenv("SYNC_MODE", "watch").lower().strip()
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# =============================================================================
# Logging Setup
# =============================================================================

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

# =============================================================================
# Constants
# =============================================================================

ANNOTATION_SYNC = "kube-bt-sync.io/baota-sync"
ANNOTATION_DDNS_PORT = "kube-bt-sync.io/ddns-port"

PROXY_NAME = "kube-bt-sync-proxy"
SITE_REMARK = "[kube-bt-sync]"
SITE_ROOT = "/www/wwwroot/"
PROXY_SUBFILTER = '[{"sub1":"","sub2":""},{"sub1":"","sub2":""},{"sub1":"","sub2":""}]'

PANEL_TIMEOUT_SECONDS = 15.0
PANEL_SITE_LIMIT = 1000
DEEP_CHECK_EVERY = 10

SITE_DEBOUNCE_SECONDS = 1.5
FAILURE_LINGER_SECONDS = 2.0
PANEL_RELOAD_COOLDOWN_SECONDS = 3.0

# Displayed verbatim by the dashboard.
STATUS_SYNCED = "✅ 已同步"
STATUS_QUEUED = "⏳ 等待处理队列中..."
SSL_MISSING_SUFFIX = " (⚠️ 宝塔未配置证书)"

PROGRESS_CREATE_SITE = "⏳ [1/2] 正在调用 API 创建站点..."
PROGRESS_DEBOUNCE = "⏳ 防抖缓冲中 (防止 Nginx 假死)..."
PROGRESS_INJECT_PROXY = "⏳ [2/2] 正在注入后端反向代理规则..."
PROGRESS_PROXY_FAILED = "❌ 反代请求发送失败"
PROGRESS_PANEL_REJECTED = "❌ 宝塔 API 拒绝请求"
PROGRESS_COOLDOWN = "⏳ 触发面板平滑重载 (冷却 3s)..."
PROGRESS_REVERSE_DELETE = "⏳ 宝塔端缺失，正在反向清理 K8s..."

ALREADY_EXISTS_MARKERS = ("already exists", "已存在")
FAILURE_MARKERS = ("错误", "失败", "error")
AUTH_FAILURE_MARKERS = ("API校验失败", "IP不在白名单")

# =============================================================================
# Errors
# =============================================================================


class KubeBtSyncError(Exception):
    """Base class for all controller errors."""


class BaotaError(KubeBtSyncError):
    """A panel call did not produce a usable result."""


class TransportError(BaotaError):
    """Panel unreachable, timed out, or answered with an undecodable body."""


class PanelRejection(BaotaError):
    """The panel answered but reported a logical failure in the body."""

    def __init__(self, body: str):
        super().__init__(f"panel rejected request: {body[:200]}")
        self.body = body


class ClusterError(KubeBtSyncError):
    """A Kubernetes API call failed."""


class ClusterListError(ClusterError):
    """Ingresses could not be enumerated."""


class ManifestError(KubeBtSyncError):
    """An Ingress manifest could not be parsed or applied."""


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class SyncConfig:
    """Controller settings resolved from the environment."""

    baota_url: str = "http://127.0.0.1:8888"
    baota_api_key: str = ""
    ddns_host: str = "home.example.com"
    default_port: str = "38333"
    sync_interval_seconds: int = 30

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "SyncConfig":
        env = os.environ if environ is None else environ
        return cls(
            baota_url=env.get("BAOTA_URL", "http://127.0.0.1:8888"),
            baota_api_key=env.get("BAOTA_API_KEY", ""),
            ddns_host=env.get("DDNS_HOST", "home.example.com"),
            default_port=env.get("DEFAULT_PORT", "38333"),
            sync_interval_seconds=int(env.get("SYNC_INTERVAL_SEC", "30")),
        )


@dataclass(frozen=True)
class ProxyTarget:
    """A host the panel must reverse-proxy to an upstream URL."""

    domain: str
    upstream: str


@dataclass(frozen=True)
class IngressRoute:
    """The parts of a Kubernetes Ingress the controller cares about."""

    namespace: str
    name: str
    annotations: Dict[str, str] = field(default_factory=dict)
    hosts: Tuple[str, ...] = ()
    tls: bool = False
    created_at: Optional[datetime] = None

    @property
    def opted_in(self) -> bool:
        return self.annotations.get(ANNOTATION_SYNC) == "true"

    def port(self, default_port: str) -> str:
        """Return the ddns-port override, or the default when unset or empty."""
        return self.annotations.get(ANNOTATION_DDNS_PORT) or default_port


@dataclass(frozen=True)
class PanelSite:
    """A site registered on the panel."""

    name: str
    id: Optional[int] = None
    ssl: bool = False


class PanelOutcome(Enum):
    """How a panel write call turned out."""

    OK = "ok"
    EXISTS = "exists"
    REJECTED = "rejected"


# =============================================================================
# Utility Functions
# =============================================================================


def build_upstream(ddns_host: str, port: str) -> str:
    return f"http://{ddns_host}:{port}"


def build_panel_url(base_url: str, path: str) -> str:
    """Join the panel base URL and an API path with exactly one slash."""
    if not path.startswith("/"):
        path = "/" + path
    return base_url.rstrip("/") + path


def sign_request(api_key: str, now: float) -> Dict[str, str]:
    """Compute the request_time/request_token pair the panel expects.

    request_token = md5(request_time + md5(api_key)), both as lowercase hex.
    """
    request_time = str(int(now))
    key_digest = hashlib.md5(api_key.encode("utf-8")).hexdigest()
    token = hashlib.md5((request_time + key_digest).encode("utf-8")).hexdigest()
    return {"request_time": request_time, "request_token": token}


def _contains_any(text: str, markers: Iterable[str]) -> bool:
    return any(marker in text for marker in markers)


def classify_panel_response(body: str) -> PanelOutcome:
    """Decide whether a panel write succeeded.

    Bodies shaped like {"status": bool, "msg": str} are judged on the status
    flag. Anything else falls back to substring matching, where an
    "already exists" marker wins over a failure marker.
    """
    try:
        payload = json.loads(body)
    except ValueError:
        payload = None

    if isinstance(payload, dict) and isinstance(payload.get("status"), bool):
        if payload["status"]:
            return PanelOutcome.OK
        if _contains_any(str(payload.get("msg") or ""), ALREADY_EXISTS_MARKERS):
            return PanelOutcome.EXISTS
        return PanelOutcome.REJECTED

    if _contains_any(body, ALREADY_EXISTS_MARKERS):
        return PanelOutcome.EXISTS
    if _contains_any(body, FAILURE_MARKERS):
        return PanelOutcome.REJECTED
    return PanelOutcome.OK


def _strip_ddns_host(value: str) -> str:
    for prefix in ("http://", "https://"):
        if value.startswith(prefix):
            value = value[len(prefix):]
    return value.split(":")[0]


# =============================================================================
# BaoTa Panel Client
# =============================================================================


class BaotaClient:
    """Signed, form-encoded client for the BaoTa panel API.

    Panels usually run with self-signed certificates on the LAN, so TLS
    verification is turned off. The HTTP status is never inspected: the panel
    reports success or failure inside the body.
    """

    def __init__(
        self,
        url: str,
        api_key: str,
        timeout_seconds: float = PANEL_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self._url = url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout_seconds
        self._clock = clock
        self._session = requests.Session()
        self._session.verify = False
        urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

    @property
    def url(self) -> str:
        return self._url

    def call(self, path: str, params: Optional[Dict[str, str]] = None) -> str:
        """POST to the panel and return the raw response body."""
        data = dict(params or {})
        data.update(sign_request(self._api_key, self._clock()))
        url = build_panel_url(self._url, path)
        try:
            response = self._session.post(
                url,
                data=data,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                timeout=self._timeout,
                verify=False,
            )
            return response.content.decode("utf-8")
        except requests.exceptions.RequestException as e:
            raise TransportError(f"Panel request {path} failed: {e}") from e
        except UnicodeDecodeError as e:
            raise TransportError(f"Panel response for {path} is not valid UTF-8: {e}") from e

    def _call_json(self, path: str, params: Optional[Dict[str, str]] = None) -> Any:
        body = self.call(path, params)
        try:
            return json.loads(body)
        except json.JSONDecodeError as e:
            raise TransportError(f"Panel response for {path} is not JSON: {e}") from e

    def list_sites(self, search: str = "", limit: Optional[int] = PANEL_SITE_LIMIT) -> List[PanelSite]:
        params = {"table": "sites"}
        if search:
            params["search"] = search
        if limit:
            params["limit"] = str(limit)

        payload = self._call_json("/data?action=getData", params)
        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, list):
            raise TransportError("Panel getData response has no 'data' list")

        sites: List[PanelSite] = []
        for item in data:
            name = item.get("name") if isinstance(item, dict) else None
            if not isinstance(name, str):
                logger.debug(f"Skipping malformed panel site entry: {item}")
                continue
            site_id = item.get("id")
            ssl = item.get("ssl")
            sites.append(
                PanelSite(
                    name=name,
                    id=site_id if isinstance(site_id, int) else None,
                    ssl=isinstance(ssl, (int, float)) and not isinstance(ssl, bool) and ssl > 0,
                )
            )
        return sites

    def find_site_id(self, domain: str) -> Optional[int]:
        for site in self.list_sites(search=domain, limit=None):
            if site.name == domain:
                return site.id
        return None

    def add_site(self, domain: str) -> str:
        webname = json.dumps(
            {"domain": domain, "domainlist": [], "count": 0}, separators=(",", ":")
        )
        return self.call(
            "/site?action=AddSite",
            {
                "webname": webname,
                "path": SITE_ROOT + domain,
                "type_id": "0",
                "type": "PHP",
                "version": "00",
                "port": "80",
                "ps": SITE_REMARK,
            },
        )

    def delete_site(self, site_id: int, domain: str) -> str:
        return self.call("/site?action=DeleteSite", {"id": str(site_id), "webname": domain})

    def _proxy_params(self, domain: str, upstream: str) -> Dict[str, str]:
        return {
            "sitename": domain,
            "proxyname": PROXY_NAME,
            "proxydir": "/",
            "proxysite": upstream,
            "todomain": "$host",
            "advanced": "0",
            "cache": "0",
            "cachetime": "1",
            "type": "1",
            "subfilter": PROXY_SUBFILTER,
        }

    def create_proxy(self, domain: str, upstream: str) -> str:
        return self.call("/site?action=CreateProxy", self._proxy_params(domain, upstream))

    def modify_proxy(self, domain: str, upstream: str) -> str:
        return self.call("/site?action=ModifyProxy", self._proxy_params(domain, upstream))

    def get_proxy_list(self, domain: str) -> List[Dict[str, Any]]:
        payload = self._call_json("/site?action=GetProxyList", {"sitename": domain})
        if not isinstance(payload, list):
            raise TransportError(f"Panel GetProxyList response for {domain} is not a list")
        return [p for p in payload if isinstance(p, dict)]

    def system_total(self) -> str:
        return self.call("/system?action=GetSystemTotal", {})


# =============================================================================
# Ingress Provider Interface and Implementations
# =============================================================================


class IngressProvider(ABC):
    """Abstract base class for the source of routing resources."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the provider name for logging."""
        pass

    @abstractmethod
    def list_routes(self) -> List[IngressRoute]:
        """List Ingresses in all namespaces. Raises ClusterListError."""
        pass

    @abstractmethod
    def delete_route(self, namespace: str, name: str) -> bool:
        """Delete an Ingress. Returns False when it was already gone."""
        pass

    @abstractmethod
    def create_route(self, namespace: str, manifest: Dict[str, Any]) -> None:
        """Create an Ingress from a manifest."""
        pass

    @abstractmethod
    def list_deployment_names(self) -> List[str]:
        """List Deployment names in all namespaces."""
        pass

    @abstractmethod
    def list_namespaces(self) -> List[str]:
        """List namespace names."""
        pass

    @abstractmethod
    def list_services(self) -> List[Dict[str, Any]]:
        """List Services in all namespaces with their ports."""
        pass


class KubernetesIngressProvider(IngressProvider):
    """Ingress provider backed by the Kubernetes API."""

    def __init__(
        self,
        networking_api: Optional[k8s_client.NetworkingV1Api] = None,
        apps_api: Optional[k8s_client.AppsV1Api] = None,
        core_api: Optional[k8s_client.CoreV1Api] = None,
    ):
        self._networking = networking_api or k8s_client.NetworkingV1Api()
        self._apps = apps_api or k8s_client.AppsV1Api()
        self._core = core_api or k8s_client.CoreV1Api()

    @property
    def name(self) -> str:
        return "Kubernetes"

    def list_routes(self) -> List[IngressRoute]:
        try:
            ingresses = self._networking.list_ingress_for_all_namespaces()
        except (ApiException, urllib3.exceptions.HTTPError) as e:
            raise ClusterListError(f"Failed to list ingresses: {e}") from e
        return [self._to_route(ing) for ing in ingresses.items or []]

    @staticmethod
    def _to_route(ingress: Any) -> IngressRoute:
        metadata = ingress.metadata
        spec = ingress.spec
        rules = (spec.rules if spec else None) or []
        return IngressRoute(
            namespace=metadata.namespace or "",
            name=metadata.name or "",
            annotations=dict(metadata.annotations or {}),
            hosts=tuple(rule.host or "" for rule in rules),
            tls=bool(spec and spec.tls),
            created_at=metadata.creation_timestamp,
        )

    def delete_route(self, namespace: str, name: str) -> bool:
        try:
            self._networking.delete_namespaced_ingress(name=name, namespace=namespace)
        except ApiException as e:
            if e.status == 404:
                logger.info(f"Ingress {namespace}/{name} already deleted")
                return False
            raise ClusterError(f"Failed to delete ingress {namespace}/{name}: {e}") from e
        except urllib3.exceptions.HTTPError as e:
            raise ClusterError(f"Failed to delete ingress {namespace}/{name}: {e}") from e
        logger.info(f"Deleted ingress {namespace}/{name}")
        return True

    def create_route(self, namespace: str, manifest: Dict[str, Any]) -> None:
        name = manifest.get("metadata", {}).get("name", "")
        try:
            self._networking.create_namespaced_ingress(namespace=namespace, body=manifest)
        except ApiException as e:
            if e.status == 409:
                raise ManifestError(f"Ingress {namespace}/{name} already exists") from e
            raise ClusterError(f"Failed to create ingress {namespace}/{name}: {e}") from e
        except urllib3.exceptions.HTTPError as e:
            raise ClusterError(f"Failed to create ingress {namespace}/{name}: {e}") from e
        logger.info(f"Created ingress {namespace}/{name}")

    def list_deployment_names(self) -> List[str]:
        try:
            deployments = self._apps.list_deployment_for_all_namespaces()
        except (ApiException, urllib3.exceptions.HTTPError) as e:
            raise ClusterError(f"Failed to list deployments: {e}") from e
        return [d.metadata.name for d in deployments.items or [] if d.metadata and d.metadata.name]

    def list_namespaces(self) -> List[str]:
        try:
            namespaces = self._core.list_namespace()
        except (ApiException, urllib3.exceptions.HTTPError) as e:
            raise ClusterError(f"Failed to list namespaces: {e}") from e
        return [ns.metadata.name for ns in namespaces.items or [] if ns.metadata and ns.metadata.name]

    def list_services(self) -> List[Dict[str, Any]]:
        try:
            services = self._core.list_service_for_all_namespaces()
        except (ApiException, urllib3.exceptions.HTTPError) as e:
            raise ClusterError(f"Failed to list services: {e}") from e
        result = []
        for svc in services.items or []:
            ports = (svc.spec.ports if svc.spec else None) or []
            result.append(
                {
                    "name": svc.metadata.name,
                    "namespace": svc.metadata.namespace,
                    "ports": [p.port for p in ports],
                }
            )
        return result


def load_kube_config() -> None:
    """Use in-cluster credentials, falling back to the local kubeconfig."""
    try:
        k8s_config.load_incluster_config()
        logger.info("Using in-cluster Kubernetes credentials")
    except k8s_config.ConfigException:
        kubeconfig = os.getenv("KUBECONFIG", str(Path.home() / ".kube" / "config"))
        k8s_config.load_kube_config(config_file=kubeconfig)
        logger.info(f"Using kubeconfig {kubeconfig}")


# =============================================================================
# Sync Status Store
# =============================================================================


class SyncStatusStore:
    """Synced and in-progress state per domain, behind one lock.

    Both maps are only reachable through these methods so a status read always
    sees them as one consistent pair. Lock holders never do I/O. The lock is a
    plain mutex, so concurrent status reads are exclusive with each other as
    well as with writes.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._synced: Dict[str, str] = {}
        self._progress: Dict[str, str] = {}

    def get_status(self, domain: str, expected_upstream: str) -> str:
        with self._lock:
            progress = self._progress.get(domain)
            if progress:
                return progress
            if self._synced.get(domain) == expected_upstream:
                return STATUS_SYNCED
            return STATUS_QUEUED

    def set_progress(self, domain: str, msg: str) -> None:
        with self._lock:
            if msg:
                self._progress[domain] = msg
            else:
                self._progress.pop(domain, None)

    def synced_upstream(self, domain: str) -> Optional[str]:
        with self._lock:
            return self._synced.get(domain)

    def mark_synced(self, domain: str, upstream: str) -> None:
        with self._lock:
            self._synced[domain] = upstream

    def clear_synced(self, domain: str) -> None:
        with self._lock:
            self._synced.pop(domain, None)

    def prune_synced(self, keep: Set[str]) -> List[str]:
        """Drop synced entries whose domain is not in keep; return the dropped ones."""
        with self._lock:
            removed = sorted(d for d in self._synced if d not in keep)
            for domain in removed:
                del self._synced[domain]
            return removed

    def snapshot(self) -> Dict[str, Dict[str, str]]:
        with self._lock:
            return {"synced": dict(self._synced), "progress": dict(self._progress)}


# =============================================================================
# Core Sync Engine
# =============================================================================


class SyncEngine:
    """Converges opted-in Ingresses and panel sites.

    Owns the status store, the pass counter and the single-flight lock: at
    most one pass runs at a time and a pass requested while another is running
    is dropped.
    """

    def __init__(
        self,
        *,
        config: SyncConfig,
        panel: BaotaClient,
        ingress_provider: IngressProvider,
        store: Optional[SyncStatusStore] = None,
        sleep: Callable[[float], None] = time.sleep,
        deep_check_every: int = DEEP_CHECK_EVERY,
    ):
        self.config = config
        self.panel = panel
        self.ingress_provider = ingress_provider
        self.store = store or SyncStatusStore()
        self._sleep = sleep
        self._deep_check_every = deep_check_every
        self._pass_lock = threading.Lock()
        self._pass_count = 0

    @property
    def pass_count(self) -> int:
        return self._pass_count

    @property
    def running(self) -> bool:
        return self._pass_lock.locked()

    def upstream_for(self, route: IngressRoute) -> str:
        return build_upstream(self.config.ddns_host, route.port(self.config.default_port))

    def status_line(self, domain: str, expected_upstream: str) -> str:
        """Human-readable status of a domain for the dashboard."""
        return self.store.get_status(domain, expected_upstream)

    def sync_once(self) -> bool:
        """Run one pass. Returns False without doing anything if a pass is running."""
        if not self._pass_lock.acquire(blocking=False):
            logger.debug("Sync pass already running, dropping request")
            return False
        try:
            self._run_pass()
        finally:
            self._pass_lock.release()
        return True

    def _run_pass(self) -> None:
        self._pass_count += 1
        deep_check = self._pass_count == 1 or self._pass_count % self._deep_check_every == 0

        panel_sites: Set[str] = set()
        panel_fetch_ok = False
        if deep_check:
            try:
                panel_sites = {site.name for site in self.panel.list_sites()}
                panel_fetch_ok = True
                logger.debug(f"Deep check: panel has {len(panel_sites)} site(s)")
            except BaotaError as e:
                logger.warning(f"Deep check: could not list panel sites, skipping reverse deletion: {e}")

        try:
            routes = self.ingress_provider.list_routes()
        except ClusterListError as e:
            logger.error(f"Aborting sync pass {self._pass_count}: {e}")
            return

        targets, current_domains = self._collect_targets(
            routes, reverse_delete=deep_check and panel_fetch_ok, panel_sites=panel_sites
        )

        applied = 0
        failed = 0
        for target in targets:
            if self.store.synced_upstream(target.domain) == target.upstream:
                continue
            ok = False
            try:
                ok = self.ensure_site_and_proxy(target)
            finally:
                if ok:
                    self.store.mark_synced(target.domain, target.upstream)
                else:
                    self.store.clear_synced(target.domain)
                self.store.set_progress(target.domain, "")
            if ok:
                applied += 1
            else:
                failed += 1

        for domain in self.store.prune_synced(current_domains):
            logger.info(f"Forgetting {domain}: no longer requested by any ingress")

        logger.info(
            f"Sync pass {self._pass_count}{' (deep check)' if deep_check else ''}: "
            f"{len(targets)} target(s), {applied} applied, {failed} failed"
        )

    def _collect_targets(
        self, routes: List[IngressRoute], *, reverse_delete: bool, panel_sites: Set[str]
    ) -> Tuple[List[ProxyTarget], Set[str]]:
        targets: List[ProxyTarget] = []
        current_domains: Set[str] = set()

        for route in routes:
            if not route.opted_in:
                continue
            upstream = self.upstream_for(route)
            for host in route.hosts:
                if not host:
                    continue
                if host in current_domains:
                    logger.warning(
                        f"Host {host} of ingress {route.namespace}/{route.name} is already "
                        f"claimed by another ingress, ignoring"
                    )
                    continue
                if (
                    reverse_delete
                    and self.store.synced_upstream(host) is not None
                    and host not in panel_sites
                ):
                    if not self._reverse_delete(route, host):
                        # Keep the entry so the next deep check retries the deletion.
                        current_domains.add(host)
                    continue

                targets.append(ProxyTarget(domain=host, upstream=upstream))
                current_domains.add(host)

        return targets, current_domains

    def _reverse_delete(self, route: IngressRoute, host: str) -> bool:
        """Delete an ingress whose site was removed on the panel."""
        logger.info(
            f"Site {host} is gone from the panel, deleting ingress {route.namespace}/{route.name}"
        )
        self.store.set_progress(host, PROGRESS_REVERSE_DELETE)
        try:
            self.ingress_provider.delete_route(route.namespace, route.name)
        except ClusterError as e:
            logger.error(f"Reverse deletion of {route.namespace}/{route.name} failed: {e}")
            return False
        finally:
            self.store.set_progress(host, "")
        self.store.clear_synced(host)
        return True

    def ensure_site_and_proxy(self, target: ProxyTarget) -> bool:
        """Create the panel site for a target and point its reverse proxy upstream."""
        domain = target.domain

        self.store.set_progress(domain, PROGRESS_CREATE_SITE)
        try:
            self.panel.add_site(domain)
        except TransportError as e:
            logger.warning(f"AddSite for {domain} failed, trying the proxy anyway: {e}")

        # The panel reloads its front proxy after AddSite.
        self.store.set_progress(domain, PROGRESS_DEBOUNCE)
        self._sleep(SITE_DEBOUNCE_SECONDS)

        self.store.set_progress(domain, PROGRESS_INJECT_PROXY)
        try:
            self._inject_proxy(target)
        except TransportError as e:
            logger.error(f"Proxy request for {domain} failed: {e}")
            return self._fail(domain, PROGRESS_PROXY_FAILED)
        except PanelRejection as e:
            logger.error(f"Panel rejected proxy for {domain}: {e}")
            return self._fail(domain, PROGRESS_PANEL_REJECTED)

        self.store.set_progress(domain, PROGRESS_COOLDOWN)
        self._sleep(PANEL_RELOAD_COOLDOWN_SECONDS)
        logger.info(f"Synced {domain} -> {target.upstream}")
        return True

    def _inject_proxy(self, target: ProxyTarget) -> None:
        body = self.panel.create_proxy(target.domain, target.upstream)
        outcome = classify_panel_response(body)
        if outcome is PanelOutcome.REJECTED:
            raise PanelRejection(body)
        if outcome is PanelOutcome.EXISTS:
            self._align_existing_proxy(target)

    def _align_existing_proxy(self, target: ProxyTarget) -> None:
        """Point an already existing proxy at the target upstream if it differs."""
        try:
            proxies = self.panel.get_proxy_list(target.domain)
        except TransportError as e:
            logger.warning(f"Could not read existing proxy of {target.domain}, keeping it: {e}")
            return

        current = next((p for p in proxies if p.get("proxyname") == PROXY_NAME), None)
        if current is None:
            logger.debug(f"No {PROXY_NAME} entry listed for {target.domain}, keeping existing proxy")
            return
        current_upstream = str(current.get("proxysite") or "").rstrip("/")
        if current_upstream == target.upstream:
            return

        logger.info(
            f"Proxy of {target.domain} points at {current_upstream}, updating to {target.upstream}"
        )
        body = self.panel.modify_proxy(target.domain, target.upstream)
        if classify_panel_response(body) is PanelOutcome.REJECTED:
            raise PanelRejection(body)

    def _fail(self, domain: str, progress: str) -> bool:
        self.store.set_progress(domain, progress)
        self._sleep(FAILURE_LINGER_SECONDS)
        return False


# =============================================================================
# Scheduler
# =============================================================================


class SyncScheduler:
    """Runs sync passes periodically and on demand."""

    def __init__(self, engine: SyncEngine, interval_seconds: float):
        self.engine = engine
        self._interval = interval_seconds
        self._stop_event = threading.Event()

    def run_forever(self) -> None:
        logger.info(f"Sync engine started (interval: {self._interval}s)")
        while not self._stop_event.is_set():
            self.run_once()
            if self._stop_event.wait(self._interval):
                break
        logger.info("Sync engine stopped")

    def run_once(self) -> bool:
        try:
            return self.engine.sync_once()
        except Exception as e:
            logger.error(f"Sync pass failed: {e}", exc_info=True)
            return False

    def trigger(self) -> threading.Thread:
        """Start a pass in the background. Dropped if a pass is already running."""
        thread = threading.Thread(target=self.run_once, name="kube-bt-sync-trigger", daemon=True)
        thread.start()
        return thread

    def stop(self) -> None:
        self._stop_event.set()


# =============================================================================
# Dashboard Backend
# =============================================================================


class DashboardBackend:
    """Operations behind the admin dashboard."""

    def __init__(self, engine: SyncEngine, scheduler: SyncScheduler):
        self.engine = engine
        self.scheduler = scheduler

    @property
    def config(self) -> SyncConfig:
        return self.engine.config

    def route_statuses(self) -> List[Dict[str, Any]]:
        """Status row for every opted-in ingress. Raises ClusterListError."""
        ssl_sites: Set[str] = set()
        try:
            ssl_sites = {site.name for site in self.engine.panel.list_sites() if site.ssl}
        except BaotaError as e:
            logger.warning(f"Could not read panel SSL state: {e}")

        rows: List[Dict[str, Any]] = []
        for route in self.engine.ingress_provider.list_routes():
            if not route.opted_in:
                continue
            port = route.port(self.config.default_port)
            domain = route.hosts[0] if route.hosts else "N/A"
            status = self.engine.status_line(domain, build_upstream(self.config.ddns_host, port))

            scheme = "http"
            if route.tls:
                scheme = "https"
                if domain not in ssl_sites and status == STATUS_SYNCED:
                    status += SSL_MISSING_SUFFIX

            rows.append(
                {
                    "namespace": route.namespace,
                    "name": route.name,
                    "domain": domain,
                    "scheme": scheme,
                    "ddnsPort": port,
                    "createdAt": (
                        route.created_at.strftime("%Y-%m-%d %H:%M:%S") if route.created_at else ""
                    ),
                    "status": status,
                }
            )
        return rows

    def delete_route(
        self, namespace: str, name: str, domain: str, delete_panel_site: bool = False
    ) -> bool:
        """Delete an ingress and optionally its panel site, then trigger a sync."""
        if delete_panel_site:
            try:
                site_id = self.engine.panel.find_site_id(domain)
                if site_id is None:
                    logger.info(f"No panel site named {domain}, nothing to delete on the panel")
                else:
                    self.engine.panel.delete_site(site_id, domain)
                    logger.info(f"Deleted panel site {domain} (id {site_id})")
            except BaotaError as e:
                logger.warning(f"Could not delete panel site {domain}: {e}")

        deleted = self.engine.ingress_provider.delete_route(namespace, name)
        self.scheduler.trigger()
        return deleted

    def apply_manifest(self, yaml_content: str) -> Tuple[str, str]:
        """Create an ingress from a YAML manifest and trigger a sync."""
        try:
            manifest = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            raise ManifestError(f"Invalid YAML: {e}") from e

        if not isinstance(manifest, dict) or manifest.get("kind") != "Ingress":
            raise ManifestError("Manifest must be a single Ingress object")
        metadata = manifest.setdefault("metadata", {})
        if not isinstance(metadata, dict) or not metadata.get("name"):
            raise ManifestError("Ingress manifest needs metadata.name")

        namespace = metadata.get("namespace") or "default"
        metadata["namespace"] = namespace
        self.engine.ingress_provider.create_route(namespace, manifest)
        self.scheduler.trigger()
        return namespace, metadata["name"]

    def namespaces(self) -> List[str]:
        """Namespace names offered when composing a manifest."""
        return self.engine.ingress_provider.list_namespaces()

    def services(self) -> List[Dict[str, Any]]:
        """Services offered as ingress backends when composing a manifest."""
        return self.engine.ingress_provider.list_services()

    def system_check(self) -> Dict[str, Any]:
        """Probe the panel, the cluster add-ons and the DDNS endpoint."""
        return {
            "baota": self._check_panel(),
            "k8s": self._check_cluster(),
            "ddns": self._check_ddns(),
        }

    def _check_panel(self) -> Dict[str, Any]:
        status = "error"
        try:
            body = self.engine.panel.system_total()
        except TransportError as e:
            msg = f"网络连通失败: {e}"
        else:
            if _contains_any(body, AUTH_FAILURE_MARKERS):
                msg = "API 密钥错误或未加入白名单"
            else:
                status = "success"
                msg = "连接成功"
        return {"status": status, "msg": msg, "url": self.config.baota_url}

    def _check_cluster(self) -> Dict[str, bool]:
        result = {"ingressInstalled": False, "metallbInstalled": False}
        try:
            names = self.engine.ingress_provider.list_deployment_names()
        except ClusterError as e:
            logger.warning(f"Could not list deployments: {e}")
            return result
        result["ingressInstalled"] = any("ingress-nginx" in n for n in names)
        result["metallbInstalled"] = any("metallb" in n for n in names)
        return result

    def _check_ddns(self) -> Dict[str, Any]:
        host = _strip_ddns_host(self.config.ddns_host)
        port = self.config.default_port
        status = "error"
        msg = "未配置 DDNS 域名或解析失败"
        ips: List[str] = []

        if host:
            try:
                infos = socket.getaddrinfo(host, None, socket.AF_UNSPEC)
            except (socket.gaierror, UnicodeError) as e:
                msg = f"DNS 解析失败，请检查域名是否生效: {e}"
            else:
                ips = sorted({info[4][0] for info in infos if info[0] == socket.AF_INET})
                if not ips:
                    msg = "未解析到 IPv4 地址"
                else:
                    try:
                        with socket.create_connection((host, int(port)), timeout=2):
                            pass
                        status = "success"
                        msg = f"穿透端口 ({port}) TCP 通信正常"
                    except (OSError, ValueError):
                        status = "warning"
                        msg = f"解析生效，但 TCP 端口 {port} 不通(请检查路由器映射)"

        return {"status": status, "msg": msg, "host": self.config.ddns_host, "ips": ips}


# =============================================================================
# Main
# =============================================================================


def validate_config(environ: Optional[Mapping[str, str]] = None) -> bool:
    """Validate configuration."""
    env = os.environ if environ is None else environ
    errors = []

    baota_url = env.get("BAOTA_URL", "http://127.0.0.1:8888")
    if not baota_url.startswith(("http://", "https://")):
        errors.append(f"BAOTA_URL must start with http:// or https:// (got '{baota_url}')")
    if not env.get("BAOTA_API_KEY", ""):
        errors.append("BAOTA_API_KEY is required")
    if not env.get("DDNS_HOST", "home.example.com"):
        errors.append("DDNS_HOST must not be empty")

    default_port = env.get("DEFAULT_PORT", "38333")
    if not default_port.isdigit():
        errors.append(f"DEFAULT_PORT must be a number (got '{default_port}')")

    interval = env.get("SYNC_INTERVAL_SEC", "30")
    try:
        if int(interval) <= 0:
            errors.append(f"SYNC_INTERVAL_SEC must be positive (got {interval})")
    except ValueError:
        errors.append(f"SYNC_INTERVAL_SEC must be an integer (got '{interval}')")

    if SYNC_MODE not in ("once", "watch"):
        errors.append(f"Invalid SYNC_MODE: {SYNC_MODE}. Use 'once' or 'watch'")

    if errors:
        for error in errors:
            logger.error(error)
        return False

    return True


def main():
    """Main entry point."""
    logger.info(">>> kube-bt-sync starting")

    if not validate_config():
        logger.error("Configuration validation failed")
        sys.exit(1)

    config = SyncConfig.from_env()
    logger.info(f"Panel: {config.baota_url}")
    logger.info(f"Upstream: {build_upstream(config.ddns_host, config.default_port)} (default)")
    logger.info(f"Sync mode: {SYNC_MODE}")

    logger.info(">>> Connecting to the Kubernetes cluster")
    try:
        load_kube_config()
    except Exception as e:
        logger.error(f"Cannot load Kubernetes configuration: {e}")
        sys.exit(1)

    engine = SyncEngine(
        config=config,
        panel=BaotaClient(config.baota_url, config.baota_api_key),
        ingress_provider=KubernetesIngressProvider(),
    )

    if SYNC_MODE == "once":
        engine.sync_once()
        return

    scheduler = SyncScheduler(engine, config.sync_interval_seconds)
    try:
        scheduler.run_forever()
    except KeyboardInterrupt:
        logger.info("Shutting down gracefully...")
        scheduler.stop()
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
