from typing import cast

from fastapi import Request
from square.dtypes import K8sConfig

from cdparser.models import ServerConfig


def get_config(request: Request) -> ServerConfig:
    """FastAPI dependency to extract the server config."""
    return cast(ServerConfig, request.app.extra["config"])


def get_k8scfg(request: Request) -> K8sConfig:
    """FastAPI dependency to extract the K8s cluster config."""
    return cast(K8sConfig, request.app.extra["k8scfg"])
