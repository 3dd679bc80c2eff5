"""
Kubernetes agent: a thin async wrapper around the official client, one per cluster.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, Dict, List, Optional, Tuple

from kubernetes import client, config
from kubernetes.client import ApiClient
from kubernetes.client.exceptions import ApiException
from kubernetes.config.config_exception import ConfigException
from urllib3.exceptions import HTTPError as Urllib3HTTPError

from control_plane.config import CONFIG, Config
from control_plane.repository import Cluster

logger = logging.getLogger(__name__)


class AgentError(Exception):
    pass


class Agent:
    def __init__(self, core_v1: client.CoreV1Api, api_client: Optional[ApiClient] = None) -> None:
        self.core_v1 = core_v1
        self.api_client = api_client or core_v1.api_client

    async def get_pods_by_label(self, selector: str, namespace: str = "") -> List[Dict[str, Any]]:
        """
        List pods matching `selector`; an empty namespace lists across all namespaces.
        """

        def _list() -> List[Dict[str, Any]]:
            if namespace:
                resp = self.core_v1.list_namespaced_pod(namespace, label_selector=selector)
            else:
                resp = self.core_v1.list_pod_for_all_namespaces(label_selector=selector)
            return [self.api_client.sanitize_for_serialization(p) for p in resp.items or []]

        try:
            return await asyncio.to_thread(_list)
        except ApiException as e:
            raise AgentError(f"unable to list pods: {e.status} {e.reason}") from e
        except Urllib3HTTPError as e:
            raise AgentError(f"unable to reach cluster: {e}") from e


class AgentGetter:
    def get_agent(self, cluster: Cluster) -> Agent:
        raise NotImplementedError

    async def aget_agent(self, cluster: Cluster) -> Agent:
        # loading a kubeconfig can run exec credential plugins
        return await asyncio.to_thread(self.get_agent, cluster)

    def close(self) -> None:
        pass


class OutOfClusterAgentGetter(AgentGetter):
    """
    Builds agents from a kubeconfig (context per cluster) or the in-cluster service account.
    One agent is kept per (cluster id, kube context) until close().
    """

    def __init__(self, config_: Config = CONFIG) -> None:
        self.kubeconfig = config_.KUBECONFIG
        self.in_cluster = config_.KUBE_IN_CLUSTER
        self._lock = threading.Lock()
        self._agents: Dict[Tuple[int, str], Agent] = {}

    def _api_client(self, cluster: Cluster) -> ApiClient:
        if self.in_cluster:
            cfg = client.Configuration()
            config.load_incluster_config(client_configuration=cfg)
            return ApiClient(configuration=cfg)
        return config.new_client_from_config(config_file=self.kubeconfig, context=cluster.kube_context or None)

    def get_agent(self, cluster: Cluster) -> Agent:
        key = (cluster.id, cluster.kube_context or "")
        with self._lock:
            agent = self._agents.get(key)
        if agent is not None:
            return agent

        try:
            api_client = self._api_client(cluster)
        except (ConfigException, OSError) as e:
            raise AgentError(f"unable to load kubernetes config for cluster {cluster.id}: {e}") from e
        built = Agent(client.CoreV1Api(api_client), api_client)

        with self._lock:
            agent = self._agents.setdefault(key, built)
        if agent is not built:
            api_client.close()
        else:
            logger.debug("built agent for cluster=%s context=%s", cluster.id, cluster.kube_context)
        return agent

    def close(self) -> None:
        with self._lock:
            agents, self._agents = list(self._agents.values()), {}
        for agent in agents:
            agent.api_client.close()


__all__ = ["Agent", "AgentGetter", "AgentError", "OutOfClusterAgentGetter"]
