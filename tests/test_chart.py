import threading
from pathlib import Path
from unittest import mock

import httpx
from square.dtypes import K8sConfig

import cdparser.annotations
import cdparser.archive
import cdparser.chart
import cdparser.getter
import cdparser.k8s
from cdparser.models import (
    ChartCredentials,
    ChartInfo,
    ErrorKind,
    GetOptions,
    SecretKeySelector,
)

from .conftest import build_tgz

KEY = "krateo-finops-focus-resource"


def manifest(value: str) -> str:
    return "\n".join(
        [
            "apiVersion: v1",
            "kind: Service",
            "metadata:",
            "  name: {{ .Release.Name }}",
            "  annotations:",
            f"    {KEY}: {value}",
        ]
    )


class TestGetOptions:
    async def test_empty(self):
        ret = await cdparser.chart.get_options(K8sConfig(), None)
        assert ret == (None, ErrorKind.REFERENCE_INVALID)

    async def test_without_credentials(self):
        info = ChartInfo(
            url="https://charts.test",
            repo="demo",
            version="1.0.0",
            insecureSkipVerifyTLS=True,
        )
        with mock.patch.object(cdparser.k8s, "get_secret_value") as m_secret:
            opts, err = await cdparser.chart.get_options(K8sConfig(), info)
        assert not err
        assert opts == GetOptions(
            uri="https://charts.test",
            repo="demo",
            version="1.0.0",
            insecureSkipVerifyTLS=True,
        )
        assert not m_secret.called

    async def test_with_credentials(self):
        k8scfg = K8sConfig()
        sel = SecretKeySelector(name="chart-creds", namespace="demo", key="token")
        info = ChartInfo(
            url="oci://registry.test/charts/demo",
            version="1.0.0",
            credentials=ChartCredentials(username="user", passwordRef=sel),
        )

        with mock.patch.object(cdparser.k8s, "get_secret_value") as m_secret:
            m_secret.return_value = ("pass", False)
            opts, err = await cdparser.chart.get_options(k8scfg, info)
        assert not err
        assert opts == GetOptions(
            uri="oci://registry.test/charts/demo",
            version="1.0.0",
            username="user",
            password="pass",
        )
        m_secret.assert_called_once_with(k8scfg, sel)

    async def test_secret_unavailable(self):
        sel = SecretKeySelector(name="chart-creds", namespace="demo", key="token")
        info = ChartInfo(
            url="https://charts.test/demo-1.0.0.tgz",
            credentials=ChartCredentials(username="user", passwordRef=sel),
        )

        with mock.patch.object(cdparser.k8s, "get_secret_value") as m_secret:
            m_secret.return_value = ("", True)
            ret = await cdparser.chart.get_options(K8sConfig(), info)
        assert ret == (None, ErrorKind.SECRET_UNAVAILABLE)

    def test_chart_info_from_manifest(self):
        """Parse the `spec.chart` section of a CompositionDefinition."""
        info = ChartInfo.model_validate(
            {
                "url": "https://charts.test",
                "repo": "demo",
                "version": "1.0.0",
                "credentials": {
                    "username": "user",
                    "passwordRef": {"name": "creds", "namespace": "demo", "key": "pw"},
                },
                "unknown": "ignored",
            }
        )
        assert info.repo == "demo"
        assert info.insecureSkipVerifyTLS is False
        assert info.credentials is not None
        assert info.credentials.passwordRef.key == "pw"


class TestChartRoot:
    def test_top_level(self, tmp_path: Path):
        (tmp_path / "Chart.yaml").write_text("name: demo\n")
        assert cdparser.chart.find_chart_root(tmp_path) == tmp_path

    def test_single_folder(self, tmp_path: Path):
        (tmp_path / "demo").mkdir()
        (tmp_path / "demo/Chart.yaml").write_text("name: demo\n")
        assert cdparser.chart.find_chart_root(tmp_path) == tmp_path / "demo"
        assert cdparser.chart.find_chart_root(tmp_path, "other") == tmp_path / "demo"

    def test_multiple_folders(self, tmp_path: Path):
        for name in ("bar", "foo"):
            (tmp_path / name).mkdir()
            (tmp_path / name / "Chart.yaml").write_text(f"name: {name}\n")
        (tmp_path / "docs").mkdir()

        assert cdparser.chart.find_chart_root(tmp_path, "foo") == tmp_path / "foo"
        assert cdparser.chart.find_chart_root(tmp_path) == tmp_path / "bar"

    def test_no_chart(self, tmp_path: Path):
        (tmp_path / "demo").mkdir()
        assert cdparser.chart.find_chart_root(tmp_path) == tmp_path


class TestRun:
    async def test_run_ok(self, tmp_path: Path, respx_mock):
        url = "https://charts.test/demo-1.0.0.tgz"
        tgz = build_tgz(
            {
                "demo/Chart.yaml": "name: demo\n",
                "demo/values.yaml": "finops:\n  db: svc-db\n",
                "demo/templates/a.yaml": manifest('["svc-a"]'),
                "demo/templates/b.yaml": manifest('["svc-a", "{{ .Values.finops.db }}"]'),
                "demo/templates/c.yaml": manifest("not-a-list"),
                "demo/templates/NOTES.txt": manifest('["ignored"]'),
            }
        )
        respx_mock.get(url).mock(return_value=httpx.Response(200, content=tgz))

        opts = GetOptions(uri=url)
        ret = await cdparser.chart.run(opts, tmp_path, KEY)
        assert ret == ({"svc-a": 2, "svc-db": 1}, None)

        # The caller owns the work directory and must remove it.
        assert (tmp_path / "demo/Chart.yaml").exists()

    async def test_run_empty_reference(self, tmp_path: Path):
        ret = await cdparser.chart.run(None, tmp_path, KEY)
        assert ret == ({}, ErrorKind.REFERENCE_INVALID)

    async def test_run_download_error(self, tmp_path: Path):
        opts = GetOptions(uri="https://charts.test/demo-1.0.0.tgz")
        with (
            mock.patch.object(cdparser.getter, "get") as m_get,
            mock.patch.object(cdparser.archive, "extract") as m_extract,
        ):
            m_get.return_value = (b"", ErrorKind.TRANSPORT_FAILURE)
            ret = await cdparser.chart.run(opts, tmp_path, KEY)
        assert ret == ({}, ErrorKind.TRANSPORT_FAILURE)
        m_get.assert_called_once_with(opts)
        assert not m_extract.called

    async def test_run_corrupt_archive(self, tmp_path: Path):
        opts = GetOptions(uri="https://charts.test/demo-1.0.0.tgz")
        with mock.patch.object(cdparser.getter, "get") as m_get:
            m_get.return_value = (b"garbage", None)
            ret = await cdparser.chart.run(opts, tmp_path, KEY)
        assert ret == ({}, ErrorKind.ARCHIVE_CORRUPT)

    async def test_run_without_templates(self, tmp_path: Path):
        opts = GetOptions(uri="https://charts.test/demo-1.0.0.tgz")
        tgz = build_tgz({"demo/Chart.yaml": "name: demo\n"})
        with mock.patch.object(cdparser.getter, "get") as m_get:
            m_get.return_value = (tgz, None)
            ret = await cdparser.chart.run(opts, tmp_path, KEY)
        assert ret == ({}, ErrorKind.TEMPLATES_DIR_MISSING)

    async def test_run_prefers_repository_folder(self, tmp_path: Path):
        opts = GetOptions(uri="https://charts.test", repo="demo", version="1.0.0")
        tgz = build_tgz(
            {
                "common/Chart.yaml": "name: common\n",
                "common/templates/a.yaml": manifest('["common"]'),
                "demo/Chart.yaml": "name: demo\n",
                "demo/templates/a.yaml": manifest('["svc-a"]'),
            }
        )
        with mock.patch.object(cdparser.getter, "get") as m_get:
            m_get.return_value = (tgz, None)
            ret = await cdparser.chart.run(opts, tmp_path, KEY)
        assert ret == ({"svc-a": 1}, None)

    async def test_run_disk_access_in_executor(self, tmp_path: Path):
        """Extracting and walking the chart must not block the event loop."""
        opts = GetOptions(uri="https://charts.test/demo-1.0.0.tgz")
        tgz = build_tgz({"demo/Chart.yaml": "name: demo\n"})
        extract = cdparser.archive.extract
        threads = []

        def fake_extract(data: bytes, work_dir: Path):
            threads.append(threading.get_ident())
            return extract(data, work_dir)

        def fake_process(chart_root: Path, annotation_key: str):
            threads.append(threading.get_ident())
            assert chart_root == tmp_path / "demo"
            return {"svc-a": 1}, None

        with (
            mock.patch.object(cdparser.getter, "get") as m_get,
            mock.patch.object(cdparser.archive, "extract") as m_extract,
            mock.patch.object(cdparser.annotations, "process_templates") as m_proc,
        ):
            m_get.return_value = (tgz, None)
            m_extract.side_effect = fake_extract
            m_proc.side_effect = fake_process
            ret = await cdparser.chart.run(opts, tmp_path, KEY)
        assert ret == ({"svc-a": 1}, None)

        assert len(threads) == 2
        assert threading.get_ident() not in threads


class TestCleanup:
    def test_cleanup(self, tmp_path: Path):
        work_dir = tmp_path / "work"
        (work_dir / "demo/templates").mkdir(parents=True)
        (work_dir / "demo/templates/a.yaml").write_text("foo")

        assert cdparser.chart.cleanup_directory(work_dir) is False
        assert not work_dir.exists()

        # Removing a non-existing folder is not an error.
        assert cdparser.chart.cleanup_directory(work_dir) is False

    def test_cleanup_error(self, tmp_path: Path):
        with mock.patch.object(cdparser.chart.shutil, "rmtree") as m_rm:
            m_rm.side_effect = PermissionError("denied")
            assert cdparser.chart.cleanup_directory(tmp_path) is True
        m_rm.assert_called_once_with(tmp_path)
