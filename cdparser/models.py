from enum import Enum
from pathlib import Path
from typing import Any, Dict, List

import httpx
from pydantic import BaseModel, ConfigDict, Field

# ----------------------------------------------------------------------
# Errors
# ----------------------------------------------------------------------


class ErrorKind(Enum):
    """Reasons why a step of the chart pipeline failed.

    All members are truthy which means callers can use the same `if err:`
    idiom as for the boolean error flags elsewhere in the code base.

    """

    REFERENCE_INVALID = "reference invalid"
    SECRET_UNAVAILABLE = "secret unavailable"
    ENTRY_NOT_FOUND = "repository entry not found"
    TRANSPORT_FAILURE = "transport failure"
    MALFORMED_INDEX = "malformed index"
    ARCHIVE_CORRUPT = "archive corrupt"
    FILESYSTEM_FAILURE = "I/O failure"
    VALUES_MISSING = "values file missing"
    VALUES_MALFORMED = "values file malformed"
    TEMPLATE_PATH_NOT_FOUND = "path not found"
    TEMPLATE_INVALID_PATH = "invalid path"
    ANNOTATION_MALFORMED = "malformed annotation value"
    TEMPLATES_DIR_MISSING = "templates directory not found"
    K8S_FAILURE = "kubernetes request failed"
    NOTEBOOK_FAILURE = "notebook call failed"


# ----------------------------------------------------------------------
# Kubernetes
# ----------------------------------------------------------------------


class NamespaceName(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = ""
    namespace: str = ""


class SecretKeySelector(BaseModel):
    name: str
    namespace: str
    key: str


class Reference(BaseModel):
    """Everything we need to address a single K8s object."""

    model_config = ConfigDict(extra="forbid")

    apiVersion: str
    kind: str = ""
    resource: str
    name: str
    namespace: str = ""


class ObjectReference(BaseModel):
    apiVersion: str = ""
    kind: str = ""
    name: str = ""
    namespace: str = ""
    uid: str = ""


class K8sEvent(BaseModel):
    """The subset of a K8s `Event` (core/v1) we care about."""

    apiVersion: str = ""
    kind: str = ""
    metadata: Dict[str, Any] = {}
    involvedObject: ObjectReference = ObjectReference()
    reason: str = ""
    message: str = ""
    type: str = ""


class DatabaseCredentials(BaseModel):
    model_config = ConfigDict(extra="forbid")

    username: str = ""
    password: str = ""


# ----------------------------------------------------------------------
# Helm Charts.
# ----------------------------------------------------------------------


class ChartCredentials(BaseModel):
    username: str
    passwordRef: SecretKeySelector


class ChartInfo(BaseModel):
    """The `spec.chart` section of a CompositionDefinition."""

    model_config = ConfigDict(frozen=True)

    url: str = ""
    repo: str = ""
    version: str = ""
    insecureSkipVerifyTLS: bool = False
    credentials: ChartCredentials | None = None


class GetOptions(BaseModel):
    """A `ChartInfo` with all secrets resolved, ready to download the chart."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    uri: str = ""
    repo: str = ""
    version: str = ""
    insecureSkipVerifyTLS: bool = False
    username: str = ""
    password: str = ""


class IndexEntry(BaseModel):
    # YAML happily parses `appVersion: 1.0` as a float.
    model_config = ConfigDict(coerce_numbers_to_str=True)

    appVersion: str = ""
    urls: List[str] = []


class RepositoryIndex(BaseModel):
    """The parts of a Helm repository `index.yaml` we use."""

    entries: Dict[str, List[IndexEntry]] = Field(default_factory=dict)


# ----------------------------------------------------------------------
# Internal Models.
# ----------------------------------------------------------------------


class ServerConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", arbitrary_types_allowed=True)

    kubeconfig: Path
    kubecontext: str

    # Endpoint of the database handler notebook that receives the annotations.
    notebook_url: str

    # Pluralizer service to map `apiVersion` and `kind` to a resource name.
    pluralizer_url: str

    # Location of the `DatabaseConfig` with the notebook credentials.
    database_config: NamespaceName

    annotation_label: str
    annotation_table: str

    loglevel: str
    host: str
    port: int

    # A single reusable HTTP client for the entire app.
    httpclient: httpx.AsyncClient
