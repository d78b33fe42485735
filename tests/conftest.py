import io
import tarfile
from pathlib import Path
from typing import Dict
from unittest import mock

import httpx
import pytest
from fastapi.testclient import TestClient
from httpx import AsyncClient
from square.dtypes import K8sConfig

import cdparser.api
import cdparser.logstreams
from cdparser.models import NamespaceName, ServerConfig

# Base URL of the fake K8s API server in all tests.
K8S_URL = "https://k8s.test"


def pytest_configure(*args, **kwargs):
    """Pytest calls this hook on startup."""
    # Set log level to DEBUG for all unit tests.
    cdparser.logstreams.setup("DEBUG")


def get_server_config():
    return ServerConfig(
        kubeconfig=Path("/tmp/kind-kubeconf.yaml"),
        kubecontext="kind-kind",
        notebook_url="http://notebook.test/handler",
        pluralizer_url="http://pluralizer.test/names",
        database_config=NamespaceName(name="finops-db", namespace="krateo-system"),
        annotation_label="krateo-finops-focus-resource",
        annotation_table="composition_definition_annotations",
        host="0.0.0.0",
        port=8085,
        loglevel="info",
        httpclient=httpx.AsyncClient(),
    )


def build_tgz(files: Dict[str, str], mode: int = 0o644) -> bytes:
    """Return a gzip compressed tarball with `files`, eg `{"a/b.yaml": "foo"}`."""
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for name, content in files.items():
            data = content.encode()
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = mode
            tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


@pytest.fixture
def tgz_factory():
    """Return a function to create chart archives in memory."""
    return build_tgz


@pytest.fixture
def server_config():
    return get_server_config()


@pytest.fixture
async def k8scfg(respx_mock):
    """Return a K8s config with a mocked client."""
    async with AsyncClient(base_url=K8S_URL) as client:
        yield K8sConfig(client=client, name="test")


@pytest.fixture
def client():
    with mock.patch.object(cdparser.api, "compile_server_config") as m_cfg:
        m_cfg.return_value = (get_server_config(), False)
        app = cdparser.api.make_app()

    app.extra["k8scfg"] = K8sConfig()  # type: ignore
    yield TestClient(app)
