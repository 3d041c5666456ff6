import io
import os
import sys
import tarfile
import time
from pathlib import Path

import pytest
import requests

import external_tools
from external_tools import (
    ActoolPacker,
    AptGetFetcher,
    RepositoryFetcher,
    TarPacker,
    run_tool,
)
from image_model import ConversionError, FetchError, PackError

CONTROL = {
    "Package": "libfoo1",
    "Version": "1.2-3",
    "Architecture": "amd64",
    "Depends": "libc6 (>= 2.34)",
    "Pre-Depends": "dpkg (>= 1.15)",
}


def _fake_extract(fields=CONTROL):
    def extract(deb_path, out_dir):
        os.makedirs(os.path.join(out_dir, "usr/lib"), exist_ok=True)
        with open(os.path.join(out_dir, "usr/lib/libfoo.so.1"), "w") as f:
            f.write(os.path.basename(deb_path))
        return dict(fields)
    return extract


def _ar_member(name, data):
    header = b"%-16s%-12d%-6d%-6d%-8s%-10d`\n" % (name.encode(), 0, 0, 0, b"100644", len(data))
    return header + data + (b"\n" if len(data) % 2 else b"")


def _tar_gz(entries):
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for name, kind, mode, payload in entries:
            info = tarfile.TarInfo(name)
            info.type = kind
            info.mode = mode
            if kind == tarfile.SYMTYPE:
                info.linkname = payload.decode()
                tar.addfile(info)
            elif kind == tarfile.DIRTYPE:
                tar.addfile(info)
            else:
                info.size = len(payload)
                tar.addfile(info, io.BytesIO(payload))
    return buf.getvalue()


def _build_deb(path):
    control = "".join(f"{k}: {v}\n" for k, v in CONTROL.items()) + "Description: test package\n"
    control_tar = _tar_gz([
        ("./", tarfile.DIRTYPE, 0o755, b""),
        ("./control", tarfile.REGTYPE, 0o644, control.encode()),
    ])
    data_tar = _tar_gz([
        ("./", tarfile.DIRTYPE, 0o755, b""),
        ("./usr/", tarfile.DIRTYPE, 0o755, b""),
        ("./usr/bin/", tarfile.DIRTYPE, 0o755, b""),
        ("./usr/bin/foo", tarfile.REGTYPE, 0o755, b"#!/bin/sh\n"),
        ("./usr/bin/editor", tarfile.SYMTYPE, 0o777, b"/etc/alternatives/editor"),
    ])
    path.write_bytes(
        b"!<arch>\n"
        + _ar_member("debian-binary", b"2.0\n")
        + _ar_member("control.tar.gz", control_tar)
        + _ar_member("data.tar.gz", data_tar)
    )
    return path


class TestRunTool:

    def test_output_forwarded_before_return(self, capfd):
        script = "import sys\nfor i in range(200): print('line', i)\nprint('last words', file=sys.stderr)"
        run_tool([sys.executable, "-c", script])
        out, err = capfd.readouterr()
        assert "line 199" in out
        assert "last words" in err

    def test_failure_raises_chosen_error(self, tmp_path):
        with pytest.raises(PackError) as excinfo:
            run_tool([sys.executable, "-c", "raise SystemExit(3)"], cwd=str(tmp_path), error=PackError)
        assert excinfo.value.get("returncode") == 3
        assert excinfo.value.get("cwd") == str(tmp_path)

    def test_missing_tool(self):
        with pytest.raises(FetchError, match="Cannot start"):
            run_tool(["definitely-not-a-real-tool-xyz"], error=FetchError)


class TestExtractDeb:

    def test_real_archive(self, tmp_path):
        deb = _build_deb(tmp_path / "libfoo1_1.2-3_amd64.deb")
        out = tmp_path / "out"
        fields = external_tools.extract_deb(str(deb), str(out))
        assert fields == CONTROL
        assert (out / "usr/bin/foo").read_text() == "#!/bin/sh\n"
        assert os.stat(out / "usr/bin/foo").st_mode & 0o777 == 0o755
        assert (out / "usr/bin/editor").is_symlink()
        assert os.readlink(out / "usr/bin/editor") == "/etc/alternatives/editor"

    def test_corrupt_archive(self, tmp_path):
        bogus = tmp_path / "bogus.deb"
        bogus.write_bytes(b"this is not an ar archive")
        with pytest.raises(FetchError, match="bogus.deb"):
            external_tools.extract_deb(str(bogus), str(tmp_path / "out"))


class TestAptGetFetcher:

    def test_fetch(self, tmp_path, monkeypatch):
        calls = []

        def fake_run(args, cwd=None, error=ConversionError):
            calls.append((args, cwd))
            open(os.path.join(cwd, "libfoo1_1.2-3_amd64.deb"), "wb").close()

        monkeypatch.setattr(external_tools, "run_tool", fake_run)
        monkeypatch.setattr(external_tools, "extract_deb", _fake_extract())

        pkg = AptGetFetcher(str(tmp_path)).fetch("libfoo1")
        assert calls[0][0] == ["apt-get", "download", "libfoo1"]
        assert os.path.dirname(calls[0][1]) == str(tmp_path)
        assert os.path.basename(calls[0][1]).startswith("pkg")
        assert pkg.name == "libfoo1"
        assert pkg.version == "1.2-3"
        assert pkg.architecture == "amd64"
        assert pkg.depends == "dpkg (>= 1.15), libc6 (>= 2.34)"
        assert pkg.filesystem_path == os.path.join(calls[0][1], "out")
        assert os.path.isfile(os.path.join(pkg.filesystem_path, "usr/lib/libfoo.so.1"))

    def test_fetch_real_archive(self, tmp_path, monkeypatch):
        def fake_run(args, cwd=None, error=ConversionError):
            _build_deb(Path(cwd) / "libfoo1_1.2-3_amd64.deb")

        monkeypatch.setattr(external_tools, "run_tool", fake_run)
        pkg = AptGetFetcher(str(tmp_path)).fetch("libfoo1")
        assert (pkg.version, pkg.architecture) == ("1.2-3", "amd64")
        assert pkg.depends == "dpkg (>= 1.15), libc6 (>= 2.34)"
        assert os.path.islink(os.path.join(pkg.filesystem_path, "usr/bin/editor"))

    @pytest.mark.parametrize("debs", [[], ["a_1_amd64.deb", "b_1_amd64.deb"]])
    def test_not_exactly_one_archive(self, tmp_path, monkeypatch, debs):
        def fake_run(args, cwd=None, error=ConversionError):
            for d in debs:
                open(os.path.join(cwd, d), "wb").close()

        monkeypatch.setattr(external_tools, "run_tool", fake_run)
        with pytest.raises(FetchError, match="exactly one"):
            AptGetFetcher(str(tmp_path)).fetch("virtual-thing")

    def test_missing_version(self, tmp_path, monkeypatch):
        monkeypatch.setattr(
            external_tools, "run_tool",
            lambda args, cwd=None, error=None: open(os.path.join(cwd, "x.deb"), "wb").close())
        monkeypatch.setattr(external_tools, "extract_deb", _fake_extract({"Package": "x"}))
        with pytest.raises(FetchError, match="Version"):
            AptGetFetcher(str(tmp_path)).fetch("x")


class FakeResponse:
    def __init__(self, status_code=200, content=b""):
        self.status_code = status_code
        self.content = content

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.exceptions.HTTPError(f"{self.status_code} error")


INDEX = """\
Package: libfoo1
Version: 1.2-3
Architecture: amd64
Filename: pool/main/libf/libfoo/libfoo1_1.2-3_amd64.deb
Depends: libc6

Package: libfoo1
Version: 1.10-1
Architecture: amd64
Filename: pool/main/libf/libfoo/libfoo1_1.10-1_amd64.deb

Package: tzdata
Version: 2024a-0
Architecture: all
Filename: pool/main/t/tzdata/tzdata_2024a-0_all.deb
"""


class TestRepositoryFetcher:

    def _repo(self, tmp_path):
        repo = tmp_path / "repository"
        repo.mkdir()
        (repo / "archive-ubuntu-com-noble-main-binary-amd64.txt").write_text(INDEX)
        return str(repo)

    def test_newest_version_from_first_working_mirror(self, tmp_path, monkeypatch):
        urls = []

        def fake_get(url, timeout=None):
            urls.append(url)
            if url.startswith("http://dead"):
                return FakeResponse(404)
            return FakeResponse(200, b"deb bytes")

        monkeypatch.setattr(external_tools.requests, "get", fake_get)
        monkeypatch.setattr(external_tools, "extract_deb", _fake_extract())
        work = tmp_path / "work"
        work.mkdir()
        fetcher = RepositoryFetcher(str(work), self._repo(tmp_path), ["http://dead/", "http://mirror"])
        pkg = fetcher.fetch("libfoo1")

        assert urls == [
            "http://dead/pool/main/libf/libfoo/libfoo1_1.10-1_amd64.deb",
            "http://mirror/pool/main/libf/libfoo/libfoo1_1.10-1_amd64.deb",
        ]
        pkg_dir = os.path.dirname(pkg.filesystem_path)
        with open(os.path.join(pkg_dir, "libfoo1_1.10-1_amd64.deb"), "rb") as f:
            assert f.read() == b"deb bytes"
        # control fields come from the archive itself, not the index
        assert pkg.version == "1.2-3"

    def test_unknown_package(self, tmp_path, monkeypatch):
        fetcher = RepositoryFetcher(str(tmp_path), self._repo(tmp_path), ["http://mirror"])
        with pytest.raises(FetchError, match="not in any index"):
            fetcher.fetch("nonexistent")

    def test_no_mirror_has_it(self, tmp_path, monkeypatch):
        def fake_get(url, timeout=None):
            raise requests.exceptions.ConnectionError("offline")

        monkeypatch.setattr(external_tools.requests, "get", fake_get)
        fetcher = RepositoryFetcher(str(tmp_path), self._repo(tmp_path), ["http://a", "http://b"])
        with pytest.raises(FetchError, match="ANY base URL") as excinfo:
            fetcher.fetch("tzdata")
        assert excinfo.value.get("package") == "tzdata"

    def test_empty_repository(self, tmp_path):
        empty = tmp_path / "empty"
        empty.mkdir()
        with pytest.raises(FetchError, match="update-repository"):
            RepositoryFetcher(str(tmp_path), str(empty), ["http://a"]).fetch("x")
        with pytest.raises(FetchError, match="not found"):
            RepositoryFetcher(str(tmp_path), str(tmp_path / "missing"), ["http://a"]).fetch("x")


class TestPackers:

    def _image_dir(self, tmp_path):
        image_dir = tmp_path / "image"
        (image_dir / "rootfs/usr/bin").mkdir(parents=True)
        (image_dir / "rootfs/etc").mkdir()
        (image_dir / "rootfs/usr/bin/app").write_text("app")
        (image_dir / "rootfs/etc/app.conf").write_text("conf")
        os.symlink("app", image_dir / "rootfs/usr/bin/app-link")
        (image_dir / "manifest").write_text("{}\n")
        return image_dir

    def test_tar_packer(self, tmp_path):
        image_dir = self._image_dir(tmp_path)
        image = tmp_path / "app.aci"
        TarPacker().pack(str(image_dir), str(image))
        with tarfile.open(image, "r:gz") as tar:
            names = tar.getnames()
            assert tar.getmember("rootfs/usr/bin/app-link").issym()
        assert names == [
            "manifest",
            "rootfs",
            "rootfs/etc",
            "rootfs/usr",
            "rootfs/etc/app.conf",
            "rootfs/usr/bin",
            "rootfs/usr/bin/app",
            "rootfs/usr/bin/app-link",
        ]

    def test_tar_packer_is_byte_identical(self, tmp_path, monkeypatch):
        image_dir = self._image_dir(tmp_path)
        first = tmp_path / "first.aci"
        TarPacker().pack(str(image_dir), str(first))
        real_time = time.time
        monkeypatch.setattr(time, "time", lambda: real_time() + 3600)
        second = tmp_path / "second.aci"
        TarPacker().pack(str(image_dir), str(second))
        assert first.read_bytes() == second.read_bytes()

    def test_tar_packer_failure(self, tmp_path):
        with pytest.raises(PackError):
            TarPacker().pack(str(tmp_path / "missing"), str(tmp_path / "out.aci"))

    def test_actool_packer(self, tmp_path, monkeypatch):
        calls = []
        monkeypatch.setattr(
            external_tools, "run_tool",
            lambda args, cwd=None, error=None: calls.append((args, error)))
        ActoolPacker().pack("/tmp/image", "/tmp/app.aci")
        assert calls == [(["actool", "build", "-overwrite", "/tmp/image", "/tmp/app.aci"], PackError)]
