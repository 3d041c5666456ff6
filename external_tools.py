import glob
import gzip
import os
import subprocess
import sys
import tarfile
import tempfile
import threading
from typing import Dict, IO, List, Optional, Sequence, Type

import requests
from debian.deb822 import Packages
from debian.debfile import DebFile
from debian.debian_support import Version

from image_model import ConversionError, FetchError, PackError, ResolvedPackage

"""
The outside world of the image builder: running tools, reading .deb archives,
fetching packages and packing the final image.

Two fetchers are provided:
 - AptGetFetcher: asks the host's apt (`apt-get download <name>`), so it uses
   whatever sources.list the host is configured with.
 - RepositoryFetcher: works from Packages indexes previously saved by
   update_repository.py and downloads .deb files straight from the mirror
   with requests. Useful when the host isn't Debian-based at all.

Both extract the archive with python-debian instead of dpkg-deb, so the
repository path needs no Debian tooling on the host.

Two packers are provided:
 - ActoolPacker: `actool build -overwrite <dir> <image>` (appc reference tool).
 - TarPacker: writes the ACI tarball directly, with sorted member order.
"""

REQUEST_TIMEOUT = 30

# Members of Debian data archives are trusted package payload (absolute
# symlinks into /etc/alternatives, setuid binaries...). The stricter default
# filters of newer interpreters would reject or rewrite them.
_EXTRACT_KWARGS = {"filter": "fully_trusted"} if hasattr(tarfile, "fully_trusted_filter") else {}


##############################################################################
# Running external tools
##############################################################################

def _pump(stream: IO[str], sink: IO[str]):
    for line in stream:
        sink.write(line)
    sink.flush()
    stream.close()


def run_tool(
    args: Sequence[str],
    cwd: Optional[str] = None,
    error: Type[ConversionError] = ConversionError,
) -> None:
    """
    Run one external command, forwarding its stdout/stderr as it runs.

    The two reader threads are joined BEFORE we look at the exit code, so the
    last lines a tool prints before dying are never lost.

    A non-zero exit (or a tool that can't be started at all) raises `error`
    with the command line, exit code and cwd in its context.
    """
    args = list(args)
    print(f"run: {' '.join(args)}" + (f" (cwd={cwd})" if cwd else ""))
    try:
        proc = subprocess.Popen(
            args,
            cwd=cwd,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            errors="replace",
        )
    except OSError as e:
        raise error(
            f"Cannot start {args[0]!r}: {e}. Is it installed and on PATH?",
            command=args, cwd=cwd,
        ) from e

    pumps = [
        threading.Thread(target=_pump, args=(proc.stdout, sys.stdout), daemon=True),
        threading.Thread(target=_pump, args=(proc.stderr, sys.stderr), daemon=True),
    ]
    for t in pumps:
        t.start()
    returncode = proc.wait()
    for t in pumps:
        t.join()

    if returncode != 0:
        raise error(
            f"Command {' '.join(args)!r} failed with exit code {returncode}",
            command=args, cwd=cwd, returncode=returncode,
        )


##############################################################################
# Reading .deb archives
##############################################################################

def extract_deb(deb_path: str, out_dir: str) -> Dict[str, str]:
    """
    Unpack the data archive of `deb_path` into `out_dir` and return the control
    fields we care about: Package, Version, Architecture, Depends, Pre-Depends.

    This is what `dpkg-deb -x` + `dpkg-deb -f` would do, without needing dpkg
    on the host.
    """
    os.makedirs(out_dir, exist_ok=True)
    deb = None
    try:
        deb = DebFile(deb_path)
        control = deb.debcontrol()
        fields = {
            key: control.get(key, "").strip()
            for key in ("Package", "Version", "Architecture", "Depends", "Pre-Depends")
        }
        with deb.data.tgz() as data:
            data.extractall(out_dir, **_EXTRACT_KWARGS)
    except Exception as e:
        raise FetchError(
            f"Error processing deb file {os.path.basename(deb_path)}: {e}",
            path=deb_path,
        ) from e
    finally:
        if deb is not None:
            deb.close()
    return fields


def _resolved_from_fields(name: str, fields: Dict[str, str], tree: str, deb_path: str) -> ResolvedPackage:
    if not fields.get("Version") or not fields.get("Architecture"):
        raise FetchError(
            f"{os.path.basename(deb_path)} (requested as {name!r}) has no "
            f"Version or Architecture control field",
            package=name, path=deb_path,
        )
    # Pre-Depends must be unpacked before the package works at all, so for an
    # image they are just more dependencies.
    depends = ", ".join(
        f for f in (fields.get("Pre-Depends", ""), fields.get("Depends", "")) if f.strip()
    )
    return ResolvedPackage(
        name=name,
        version=fields["Version"],
        architecture=fields["Architecture"],
        filesystem_path=tree,
        depends=depends,
    )


##############################################################################
# Fetchers
##############################################################################

class AptGetFetcher:
    """
    Fetch packages with the host's `apt-get download`.

    Every package gets its own pkg* directory under work_dir:
        <work_dir>/pkgXXXX/<name>_<ver>_<arch>.deb
        <work_dir>/pkgXXXX/out/...            (extracted tree)
    """

    def __init__(self, work_dir: str):
        self.work_dir = work_dir

    def fetch(self, name: str) -> ResolvedPackage:
        print(f"Downloading {name} to {self.work_dir}")
        pkg_dir = tempfile.mkdtemp(prefix="pkg", dir=self.work_dir)
        run_tool(["apt-get", "download", name], cwd=pkg_dir, error=FetchError)

        matches = sorted(glob.glob(os.path.join(pkg_dir, "*.deb")))
        if len(matches) != 1:
            raise FetchError(
                f"Expected exactly one .deb after downloading {name!r}, "
                f"found {len(matches)}: {matches}",
                package=name, matches=matches,
            )
        out = os.path.join(pkg_dir, "out")
        fields = extract_deb(matches[0], out)
        return _resolved_from_fields(name, fields, out, matches[0])


class RepositoryFetcher:
    """
    Fetch packages using Packages indexes from update_repository.py.

    The index is loaded once, on the first fetch. For a name with several
    records (same package in jammy and noble-updates, say) the newest Version
    wins, with a stable tie-break on the index file name.

    Only exact package names are looked up. Virtual packages are not resolved.
    """

    def __init__(self, work_dir: str, repo_dir: str, base_urls: List[str]):
        self.work_dir = work_dir
        self.repo_dir = repo_dir
        self.base_urls = [u for u in base_urls if u]
        self._index: Optional[Dict[str, List[Dict[str, str]]]] = None

    def _load_index(self) -> Dict[str, List[Dict[str, str]]]:
        if self._index is not None:
            return self._index

        if not os.path.isdir(self.repo_dir):
            raise FetchError(
                f"Repository directory {self.repo_dir!r} not found.\n"
                f"Run 'update-repository' to download package lists first.",
                path=self.repo_dir,
            )
        text_files = sorted(glob.glob(os.path.join(self.repo_dir, "*.txt")))
        if not text_files:
            raise FetchError(
                f"No .txt repository files found in {self.repo_dir!r}. "
                f"Did update-repository run correctly?",
                path=self.repo_dir,
            )

        index: Dict[str, List[Dict[str, str]]] = {}
        for txt_path in text_files:
            source_hint = os.path.basename(txt_path)[:-4]
            try:
                with open(txt_path, "r", encoding="utf-8", errors="replace") as f:
                    for para in Packages.iter_paragraphs(f, use_apt_pkg=False):
                        name = para.get("Package")
                        if not (name and para.get("Version") and para.get("Filename")):
                            continue
                        index.setdefault(name, []).append({
                            "Version": para["Version"],
                            "Filename": para["Filename"],
                            "source": source_hint,
                        })
            except OSError as e:
                raise FetchError(
                    f"Error reading repository file {txt_path}: {e}",
                    path=txt_path,
                ) from e

        total = sum(len(v) for v in index.values())
        print(f"Indexed {total} package records from {len(text_files)} repository file(s).")
        self._index = index
        return index

    def _select(self, name: str) -> Dict[str, str]:
        records = self._load_index().get(name)
        if not records:
            raise FetchError(
                f"Package {name!r} is not in any index under {self.repo_dir!r}",
                package=name,
            )
        return max(records, key=lambda r: (Version(r["Version"]), r["source"]))

    def _download(self, name: str, filename: str, pkg_dir: str) -> str:
        file_path = os.path.join(pkg_dir, os.path.basename(filename))
        relative_path = filename.lstrip("/")
        for base in self.base_urls:
            url = f"{base.rstrip('/')}/{relative_path}"
            print(f"Downloading: {os.path.basename(filename)} from {url}")
            try:
                response = requests.get(url, timeout=REQUEST_TIMEOUT)
                response.raise_for_status()
            except requests.exceptions.RequestException as e:
                print(f"Failed to fetch from {url}: {e}")
                continue
            with open(file_path, "wb") as outf:
                outf.write(response.content)
            return file_path

        raise FetchError(
            f"Error fetching {name!r}: {relative_path!r} not found in ANY base URL:\n"
            + "\n".join(self.base_urls),
            package=name, filename=filename, base_urls=list(self.base_urls),
        )

    def fetch(self, name: str) -> ResolvedPackage:
        record = self._select(name)
        pkg_dir = tempfile.mkdtemp(prefix="pkg", dir=self.work_dir)
        deb_path = self._download(name, record["Filename"], pkg_dir)
        out = os.path.join(pkg_dir, "out")
        fields = extract_deb(deb_path, out)
        return _resolved_from_fields(name, fields, out, deb_path)


##############################################################################
# Packers
##############################################################################

class ActoolPacker:
    def pack(self, image_dir: str, image: str) -> None:
        run_tool(["actool", "build", "-overwrite", image_dir, image], error=PackError)


class TarPacker:
    """
    Write the ACI directly: a gzip'd tar with `manifest` and `rootfs/` at the
    top. Entries are added in sorted order, directory by directory.
    """

    def pack(self, image_dir: str, image: str) -> None:
        manifest = os.path.join(image_dir, "manifest")
        rootfs = os.path.join(image_dir, "rootfs")
        print(f"Packing {image_dir} into {image}")
        try:
            # mtime=0 and no file name in the gzip header: same input, same bytes.
            with open(image, "wb") as raw, \
                    gzip.GzipFile(filename="", mode="wb", fileobj=raw, mtime=0) as gz, \
                    tarfile.open(fileobj=gz, mode="w|") as tar:
                tar.add(manifest, arcname="manifest", recursive=False)
                tar.add(rootfs, arcname="rootfs", recursive=False)
                for dirpath, dirnames, filenames in os.walk(rootfs):
                    dirnames.sort()
                    for entry in sorted(dirnames + filenames):
                        full = os.path.join(dirpath, entry)
                        arcname = os.path.join("rootfs", os.path.relpath(full, rootfs))
                        tar.add(full, arcname=arcname, recursive=False)
        except (OSError, tarfile.TarError) as e:
            raise PackError(f"Failed to write image {image}: {e}", image=image) from e
