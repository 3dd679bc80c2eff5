"""
Add-on listing: Helm releases of a cluster that are not part of the platform itself.

Helm is an opaque external tool here; we only run `helm list --output json` and filter.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from control_plane.repository import Cluster

logger = logging.getLogger(__name__)

NAMESPACE_BLACKLIST = frozenset(
    {
        "ack-system",
        "cert-manager",
        "ingress-nginx",
        "kube-node-lease",
        "kube-public",
        "kube-system",
        "monitoring",
        "porter-agent-system",
    }
)
# charts that back regular apps rather than add-ons
CHART_BLACKLIST = frozenset({"web", "worker", "job", "umbrella"})

ALL_NAMESPACES = "all"


class AddOnError(Exception):
    pass


@dataclass
class AddOn:
    name: str
    namespace: str
    revision: int
    status: str
    updated: str
    chart: str
    chart_name: str
    chart_version: str
    app_version: str

    def to_api(self) -> Dict[str, Any]:
        return asdict(self)


def split_chart(chart: str) -> Tuple[str, str]:
    """'cert-manager-1.12.0' -> ('cert-manager', '1.12.0')"""
    for i in range(len(chart) - 2, -1, -1):
        if chart[i] == "-" and chart[i + 1].isdigit():
            return chart[:i], chart[i + 1:]
    return chart, ""


def parse_releases(raw: str) -> List[AddOn]:
    try:
        data = json.loads(raw or "[]")
    except ValueError as e:
        raise AddOnError(f"unable to parse helm output: {e}") from e
    if data is None:
        return []
    if not isinstance(data, list):
        raise AddOnError("unexpected helm output: not a list")
    out: List[AddOn] = []
    for r in data:
        if not isinstance(r, dict):
            continue
        chart = str(r.get("chart") or "")
        chart_name, chart_version = split_chart(chart)
        try:
            revision = int(r.get("revision") or 0)
        except (TypeError, ValueError):
            revision = 0
        out.append(
            AddOn(
                name=str(r.get("name") or ""),
                namespace=str(r.get("namespace") or ""),
                revision=revision,
                status=str(r.get("status") or ""),
                updated=str(r.get("updated") or ""),
                chart=chart,
                chart_name=chart_name,
                chart_version=chart_version,
                app_version=str(r.get("app_version") or ""),
            )
        )
    return out


def filter_addons(addons: List[AddOn], search: str = "") -> List[AddOn]:
    q = (search or "").strip().lower()
    out = [
        a for a in addons
        if a.namespace not in NAMESPACE_BLACKLIST
        and a.chart_name not in CHART_BLACKLIST
        and (not q or q in a.name.lower() or q in a.chart_name.lower())
    ]
    return sorted(out, key=lambda a: (a.name, a.namespace))


def helm_list_args(namespace: str, limit: int, kube_context: Optional[str] = None) -> List[str]:
    args = ["list", "--output", "json", "--max", str(limit), "--deployed", "--uninstalled", "--pending", "--failed"]
    if not namespace or namespace == ALL_NAMESPACES:
        args.append("--all-namespaces")
    else:
        args += ["-n", namespace]
    if kube_context:
        args += ["--kube-context", kube_context]
    return args


def _which(bin_name: str) -> Optional[str]:
    if os.path.sep in bin_name:
        return bin_name if os.access(bin_name, os.X_OK) else None
    for p in (os.getenv("PATH") or "").split(os.pathsep):
        cand = Path(p) / bin_name
        if cand.exists() and os.access(cand, os.X_OK):
            return str(cand)
    return None


class HelmRunner:
    async def run(self, args: List[str]) -> str:
        raise NotImplementedError


class SubprocessHelmRunner(HelmRunner):
    def __init__(self, helm_bin: str = "helm", timeout: float = 30.0) -> None:
        self.helm_bin = helm_bin
        self.timeout = timeout

    async def run(self, args: List[str]) -> str:
        helm = _which(self.helm_bin)
        if not helm:
            raise AddOnError(f"{self.helm_bin} not found")
        proc = await asyncio.create_subprocess_exec(
            helm,
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            proc.kill()
            await proc.wait()
            raise AddOnError(f"helm timed out after {self.timeout}s") from e
        if proc.returncode != 0:
            err_tail = (stderr or b"").decode("utf-8", errors="ignore")[-400:]
            raise AddOnError(f"helm list failed: {err_tail.strip()}")
        return stdout.decode("utf-8", errors="ignore")


async def list_addons(
    runner: HelmRunner,
    cluster: Cluster,
    namespace: str = ALL_NAMESPACES,
    search: str = "",
    limit: int = 50,
) -> List[AddOn]:
    args = helm_list_args(namespace, limit, cluster.kube_context)
    raw = await runner.run(args)
    addons = filter_addons(parse_releases(raw), search)
    logger.debug("listed addons cluster=%s namespace=%s count=%d", cluster.id, namespace, len(addons))
    return addons


__all__ = [
    "AddOn",
    "AddOnError",
    "HelmRunner",
    "SubprocessHelmRunner",
    "list_addons",
    "filter_addons",
    "parse_releases",
    "split_chart",
    "helm_list_args",
    "NAMESPACE_BLACKLIST",
    "CHART_BLACKLIST",
]
