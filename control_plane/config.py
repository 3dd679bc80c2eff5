from __future__ import annotations

import json
import os
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

load_dotenv()  # loads .env if present; no-op otherwise

ROOT = Path(__file__).resolve().parents[1]


def _env_int(name: str, default: int) -> int:
    try:
        raw = (os.getenv(name) or "").strip()
        return int(raw) if raw else default
    except ValueError:
        return default


def _env_flag(name: str, default: str = "0") -> bool:
    return (os.getenv(name, default) or default).strip().lower() in ("1", "true", "yes")


class Config:
    def __init__(self) -> None:
        self.CP_HOST: str = os.getenv("CP_HOST", "0.0.0.0")
        self.CP_PORT: int = _env_int("CP_PORT", 8088)
        self.CP_VERSION: str = os.getenv("CP_VERSION", "0.1.0")
        self.LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()
        self.ENABLE_OTEL: bool = _env_flag("ENABLE_OTEL")
        self.CORS_ALLOW_ORIGINS: List[str] = [
            o.strip() for o in (os.getenv("CORS_ALLOW_ORIGINS", "*") or "*").split(",") if o.strip()
        ]

        # Repository
        self.DATABASE_URL: Optional[str] = os.getenv("DATABASE_URL") or None
        self.DB_CONNECT_TIMEOUT: int = _env_int("DB_CONNECT_TIMEOUT", 5)
        default_backend = "postgres" if self.DATABASE_URL else "memory"
        self.REPOSITORY_BACKEND: str = (os.getenv("REPOSITORY_BACKEND") or default_backend).strip().lower()
        self.REPOSITORY_SEED_PATH: Optional[str] = os.getenv("REPOSITORY_SEED_PATH") or None

        # Cluster control plane (Connect RPC)
        self.CLUSTER_CONTROL_PLANE_URL: str = os.getenv("CLUSTER_CONTROL_PLANE_URL", "http://localhost:7833")
        self.CLUSTER_CONTROL_PLANE_TOKEN: Optional[str] = os.getenv("CLUSTER_CONTROL_PLANE_TOKEN") or None
        self.CCP_TIMEOUT_SECONDS: int = _env_int("CCP_TIMEOUT_SECONDS", 30)

        # Kubernetes
        self.KUBECONFIG: Optional[str] = os.getenv("KUBECONFIG") or None
        self.KUBE_IN_CLUSTER: bool = _env_flag("KUBE_IN_CLUSTER")

        # CI wiring
        self.SERVER_URL: str = os.getenv("SERVER_URL", "http://localhost:8088")
        self.GITHUB_API_URL: str = os.getenv("GITHUB_API_URL", "https://api.github.com")
        self.GITHUB_TOKEN: Optional[str] = os.getenv("GITHUB_TOKEN") or None

        # Add-ons
        self.HELM_BIN: str = os.getenv("HELM_BIN", "helm")
        self.HELM_TIMEOUT_SECONDS: int = _env_int("HELM_TIMEOUT_SECONDS", 30)

        self.DASHBOARD_DIR: str = os.getenv("DASHBOARD_DIR", str(ROOT / "dashboard" / "build"))

        self.AUTH_MODE: str = (os.getenv("AUTH_MODE", "none") or "none").strip().lower()

    @staticmethod
    def _mask_db_url(url: Optional[str]) -> Optional[str]:
        if not url:
            return url
        return re.sub(r"//([^:/?#]+):([^@]+)@", r"//\1:****@", url)

    def safe_dict(self) -> Dict[str, Any]:
        return {
            "CP_HOST": self.CP_HOST,
            "CP_PORT": self.CP_PORT,
            "CP_VERSION": self.CP_VERSION,
            "LOG_LEVEL": self.LOG_LEVEL,
            "ENABLE_OTEL": self.ENABLE_OTEL,
            "CORS_ALLOW_ORIGINS": self.CORS_ALLOW_ORIGINS,
            "DATABASE_URL": self._mask_db_url(self.DATABASE_URL),
            "DB_CONNECT_TIMEOUT": self.DB_CONNECT_TIMEOUT,
            "REPOSITORY_BACKEND": self.REPOSITORY_BACKEND,
            "REPOSITORY_SEED_PATH": self.REPOSITORY_SEED_PATH,
            "CLUSTER_CONTROL_PLANE_URL": self.CLUSTER_CONTROL_PLANE_URL,
            "CLUSTER_CONTROL_PLANE_TOKEN": "<set>" if self.CLUSTER_CONTROL_PLANE_TOKEN else "<unset>",
            "CCP_TIMEOUT_SECONDS": self.CCP_TIMEOUT_SECONDS,
            "KUBECONFIG": self.KUBECONFIG,
            "KUBE_IN_CLUSTER": self.KUBE_IN_CLUSTER,
            "SERVER_URL": self.SERVER_URL,
            "GITHUB_API_URL": self.GITHUB_API_URL,
            "GITHUB_TOKEN": "<set>" if self.GITHUB_TOKEN else "<unset>",
            "HELM_BIN": self.HELM_BIN,
            "HELM_TIMEOUT_SECONDS": self.HELM_TIMEOUT_SECONDS,
            "DASHBOARD_DIR": self.DASHBOARD_DIR,
            "AUTH_MODE": self.AUTH_MODE,
        }

    def safe_repr(self) -> str:
        return json.dumps(self.safe_dict(), separators=(",", ":"), sort_keys=True)


CONFIG = Config()


__all__ = ["Config", "CONFIG", "ROOT"]
