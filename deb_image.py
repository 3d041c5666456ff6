import argparse
import errno
import functools
import json
import os
import re
import shutil
import stat
import sys
import tempfile
from typing import Any, Callable, Dict, Iterable, List, Optional

from external_tools import ActoolPacker, AptGetFetcher, RepositoryFetcher, TarPacker
from image_model import (
    Annotation,
    ConversionError,
    FetchError,
    FilesystemError,
    IdentifierError,
    ManifestError,
    ResolvedPackage,
)

"""
Turn a handful of Debian packages into an App Container (ACI) image.

Flow:
 - resolve the dependency closure of the requested packages (fetching each
   package exactly once, by name),
 - merge every package's extracted tree into one rootfs, in discovery order,
 - append one `debian.org/deb/<name>` annotation per package to the base
   manifest the caller handed us,
 - pack manifest + rootfs into the image.

This is deliberately NOT apt. Dependencies are followed by name only:
 - version constraints are dropped,
 - of `a | b` only `a` is ever considered,
 - virtual packages are not resolved,
 - the first version fetched for a name wins.
That is good enough to assemble small application images from a known set of
packages. If a dependency can't be fetched by its literal name, the whole
conversion fails instead of guessing.

Everything lives in a temporary working directory which is removed on the way
out, success or not. A failed run never leaves a half-built image behind.
"""

ANNOTATION_NAMESPACE = "debian.org/deb"

# appc schema: lower case alphanumerics, separated by single "-._~/"
VALID_AC_IDENTIFIER = re.compile(r"^[a-z0-9]+([-._~/][a-z0-9]+)*$")
_INVALID_AC_IDENTIFIER_CHARS = re.compile(r"[^a-z0-9\-._~/]")
_INVALID_AC_IDENTIFIER_EDGES = re.compile(r"(^[-._~/]+)|([-._~/]+$)")


##############################################################################
# Dependency parsing
##############################################################################

def parse_depends(declaration: Optional[str]) -> List[str]:
    """
    Turn a Depends declaration into the list of package names to pull in.

        "libc6 (>= 2.14), libssl1.1"   -> ["libc6", "libssl1.1"]
        "foo | bar, baz"               -> ["foo", "baz"]
        ""                             -> []

    Each comma separated clause contributes its first whitespace token.
    Version constraints are dropped, and so are alternatives: for `foo | bar`
    we only ever consider `foo`. That first-alternative rule is the policy, not
    an accident. Picking among alternatives needs an index of what exists,
    which the resolver doesn't have.

    Never raises. Garbage in means "no dependencies" or a best-effort name.
    """
    if not declaration or not declaration.strip():
        return []

    deps: List[str] = []
    for clause in declaration.split(","):
        tokens = clause.split()
        if tokens:
            deps.append(tokens[0])
    return deps


##############################################################################
# Resolver
##############################################################################

def resolve_closure(root_names: Iterable[str], fetcher: Any) -> Dict[str, ResolvedPackage]:
    """
    Fetch `root_names` and everything they (transitively) depend on.

    `fetcher` is anything with a `fetch(name) -> ResolvedPackage` method
    (see external_tools.AptGetFetcher / RepositoryFetcher).

    Walks depth-first, pre-order, roots in the order given. A package is
    fetched, recorded, and its dependencies walked before its next sibling.
    The returned dict is in that discovery order, which is also the order
    the filesystems get merged in, so the same inputs always give the same
    rootfs.

    Dedup is by NAME only. The first version fetched for a name is kept and
    the name is never fetched again, which is also what makes dependency
    cycles terminate.

    We use an explicit stack instead of recursion: real dependency chains
    (think libreoffice) get deep. Dependencies are pushed in reverse so they
    pop in declaration order, giving the same order a recursive walk would.
    """
    closure: Dict[str, ResolvedPackage] = {}
    stack: List[str] = list(reversed(list(root_names)))

    while stack:
        name = stack.pop()
        if name in closure:
            print(f"{name} already resolved, skipping")
            continue

        try:
            pkg = fetcher.fetch(name)
        except FetchError:
            raise
        except Exception as e:
            raise FetchError(f"Error fetching {name!r}: {e}", package=name) from e

        if pkg.name != name:
            pkg = pkg._replace(name=name)
        closure[name] = pkg
        print(f"Resolved {name} {pkg.version} ({pkg.architecture})")

        deps = parse_depends(pkg.depends)
        if deps:
            print(f"{name} depends on {deps}")
            stack.extend(reversed(deps))

    return closure


##############################################################################
# Filesystem assembly
##############################################################################

_MAX_SYMLINKS = 40


def _resolve_in_root(path: str, root: str) -> str:
    """
    Resolve `path` (somewhere under `root`) the way a process chrooted into
    `root` would see it: absolute link targets start over at `root`, and
    ".." never climbs above it. Components that don't exist yet are kept
    as they are.
    """
    rel = os.path.relpath(path, root)
    parts = [p for p in rel.split(os.sep) if p not in ("", ".")]
    resolved = root
    links = 0
    while parts:
        part = parts.pop(0)
        if part == "..":
            if resolved != root:
                resolved = os.path.dirname(resolved)
            continue
        candidate = os.path.join(resolved, part)
        if not os.path.islink(candidate):
            resolved = candidate
            continue
        links += 1
        if links > _MAX_SYMLINKS:
            raise OSError(errno.ELOOP, "too many levels of symbolic links", path)
        link = os.readlink(candidate)
        if link.startswith("/"):
            resolved = root
        parts = [p for p in link.split("/") if p not in ("", ".")] + parts
    return resolved


def _copy_entry(src: str, dst: str) -> None:
    if os.path.isdir(dst) and not os.path.islink(dst):
        raise IsADirectoryError(
            errno.EISDIR, "cannot overwrite directory with non-directory", dst)
    # Replace, never write through: dst may be a symlink or read-only.
    if os.path.lexists(dst):
        os.unlink(dst)
    if os.path.islink(src):
        os.symlink(os.readlink(src), dst)
        shutil.copystat(src, dst, follow_symlinks=False)
    else:
        shutil.copy2(src, dst, follow_symlinks=False)


def _merge_tree(src: str, dst: str, root: str) -> None:
    entries = sorted(os.scandir(src), key=lambda e: e.name)
    for entry in entries:
        target = os.path.join(dst, entry.name)
        if not entry.is_dir(follow_symlinks=False):
            _copy_entry(entry.path, target)
            continue

        if os.path.islink(target):
            # e.g. usrmerge's lib -> usr/lib or var/run -> /run: follow it
            # inside the image, never on the host.
            target = _resolve_in_root(target, root)

        if os.path.lexists(target) and not os.path.isdir(target):
            raise NotADirectoryError(
                errno.ENOTDIR, "cannot overwrite non-directory with directory", target)
        else:
            os.makedirs(target, exist_ok=True)

        _merge_tree(entry.path, target, root)
        shutil.copystat(entry.path, target)


def merge_filesystems(closure: Dict[str, ResolvedPackage], target_root: str) -> None:
    """
    Copy every package's tree into `target_root`, in closure order.

    Same thing as `cp -a <pkg>/. <target_root>` for each package: directories
    are merged, files and symlinks copied with their metadata. When two
    packages ship the same path, the one merged LAST wins, silently.

    Any failure aborts with FilesystemError. There's no rollback: the caller
    throws the whole working directory away anyway.
    """
    try:
        os.makedirs(target_root, exist_ok=True)
    except OSError as e:
        raise FilesystemError(
            f"Cannot create root filesystem {target_root}: {e}", path=target_root) from e
    root = os.path.realpath(target_root)

    for pkg in closure.values():
        print(f"Merging {pkg.name} into {target_root}")
        if not os.path.isdir(pkg.filesystem_path):
            raise FilesystemError(
                f"Extracted tree of {pkg.name} is missing: {pkg.filesystem_path}",
                package=pkg.name, path=pkg.filesystem_path,
            )
        try:
            _merge_tree(pkg.filesystem_path, root, root)
        except (OSError, shutil.Error) as e:
            raise FilesystemError(
                f"Failed to merge {pkg.name} into {target_root}: {e}",
                package=pkg.name, path=getattr(e, "filename", None) or pkg.filesystem_path,
            ) from e


##############################################################################
# Manifest
##############################################################################

def sanitize_ac_identifier(s: str) -> str:
    """
    Best-effort conversion of `s` into an ACI identifier: lower case it,
    replace forbidden characters with "_" and trim separators off both ends.

    The result is not guaranteed valid ("libstdc++6" -> "libstdc__6"), run it
    through new_ac_identifier() for that.
    """
    s = s.lower()
    s = _INVALID_AC_IDENTIFIER_CHARS.sub("_", s)
    s = _INVALID_AC_IDENTIFIER_EDGES.sub("", s)
    if not s:
        raise IdentifierError("must contain at least one valid character", value=s)
    return s


def new_ac_identifier(s: str) -> str:
    if not s:
        raise IdentifierError("ACIdentifier cannot be empty", value=s)
    if VALID_AC_IDENTIFIER.match(s):
        return s
    if _INVALID_AC_IDENTIFIER_EDGES.search(s):
        raise IdentifierError(
            f"ACIdentifier {s!r} must start and end with only lower case "
            f"alphanumeric characters", value=s)
    raise IdentifierError(
        f"ACIdentifier {s!r} must contain only lower case alphanumeric "
        f'characters plus "-._~/", with no two separators in a row', value=s)


def package_identifier(name: str) -> str:
    raw = f"{ANNOTATION_NAMESPACE}/{name}"
    try:
        return new_ac_identifier(sanitize_ac_identifier(raw))
    except IdentifierError as e:
        raise IdentifierError(
            f"Package name {name!r} can't be used as an annotation name: {e}",
            package=name, value=raw,
        ) from e


def annotate_manifest(manifest: Dict[str, Any], closure: Dict[str, ResolvedPackage]) -> Dict[str, Any]:
    """
    Record every package of the closure in `manifest["annotations"]`:

        {"name": "debian.org/deb/libjbig0", "value": "amd64/2.1-3.1"}

    Annotations already in the base manifest stay where they are. One with
    the same name as a package annotation gets its value replaced (annotation
    names are a set); everything new is appended in closure order.

    Every identifier is built before the manifest is touched, so on
    IdentifierError the manifest is left exactly as it was.
    """
    emitted: Dict[str, str] = {}
    new: List[Annotation] = []
    for pkg in closure.values():
        ann = Annotation(
            name=package_identifier(pkg.name),
            value=f"{pkg.architecture}/{pkg.version}",
        )
        if ann.name in emitted:
            raise IdentifierError(
                f"Packages {emitted[ann.name]!r} and {pkg.name!r} both map to "
                f"annotation {ann.name!r}",
                package=pkg.name, value=ann.name,
            )
        emitted[ann.name] = pkg.name
        new.append(ann)

    annotations = manifest.get("annotations")
    if annotations is None:
        annotations = manifest["annotations"] = []
    for ann in new:
        for i, existing in enumerate(annotations):
            if existing.get("name") == ann.name:
                annotations[i] = ann.as_dict()
                break
        else:
            annotations.append(ann.as_dict())
    return manifest


def read_manifest(path: str) -> Dict[str, Any]:
    """Load and sanity check a base ImageManifest (JSON)."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            manifest = json.load(f)
    except OSError as e:
        raise ManifestError(f"Cannot read manifest {path}: {e}", path=path) from e
    except ValueError as e:
        raise ManifestError(f"Manifest {path} is not valid JSON: {e}", path=path) from e

    if not isinstance(manifest, dict):
        raise ManifestError(f"Manifest {path} must be a JSON object", path=path)
    if manifest.get("acKind") != "ImageManifest":
        raise ManifestError(
            f"Manifest {path}: acKind must be 'ImageManifest', got {manifest.get('acKind')!r}",
            path=path)
    if not manifest.get("acVersion"):
        raise ManifestError(f"Manifest {path}: acVersion is required", path=path)
    try:
        new_ac_identifier(manifest.get("name") or "")
    except IdentifierError as e:
        raise ManifestError(f"Manifest {path}: bad name: {e}", path=path) from e

    annotations = manifest.setdefault("annotations", [])
    if annotations is None:
        annotations = manifest["annotations"] = []
    if not isinstance(annotations, list) or not all(
        isinstance(a, dict) and isinstance(a.get("name"), str) and isinstance(a.get("value"), str)
        for a in annotations
    ):
        raise ManifestError(
            f"Manifest {path}: annotations must be a list of {{name, value}} objects",
            path=path)
    return manifest


def write_manifest(manifest: Dict[str, Any], path: str) -> None:
    try:
        with open(path, "w", encoding="utf-8") as f:
            json.dump(manifest, f, indent=2)
            f.write("\n")
    except OSError as e:
        raise ManifestError(f"Cannot write manifest {path}: {e}", path=path) from e


##############################################################################
# Conversion
##############################################################################

def _remove_work_dir(path: str) -> None:
    try:
        # Package trees may carry read-only directories (copystat'd, too).
        for dirpath, dirnames, _ in os.walk(path):
            for d in dirnames:
                full = os.path.join(dirpath, d)
                if not os.path.islink(full):
                    os.chmod(full, os.stat(full).st_mode | stat.S_IRWXU)
        shutil.rmtree(path)
    except OSError as e:
        print(f"deb-image: failed to remove {path}, err: {e}", file=sys.stderr)


def convert(
    packages: List[str],
    image: str,
    manifest: Dict[str, Any],
    fetcher_factory: Callable[[str], Any],
    packer: Any,
    work_dir: Optional[str] = None,
) -> Dict[str, ResolvedPackage]:
    """
    Run the whole pipeline and write `image`. Returns the closure that went
    into it.

    `fetcher_factory(work_dir)` builds the fetcher once the working directory
    exists. `packer.pack(image_dir, image)` gets a directory holding
    `manifest` and `rootfs/`.

    Layout of the working directory while we run:
        deb-imageXXXX/
            pkgXXXX/...        one per fetched package (archive + out/)
            imageXXXX/
                manifest
                rootfs/
    """
    tmp = tempfile.mkdtemp(prefix="deb-image", dir=work_dir)
    try:
        fetcher = fetcher_factory(tmp)
        closure = resolve_closure(packages, fetcher)
        print(f"Info: {len(closure)} package(s) in the closure of {packages}")

        image_dir = tempfile.mkdtemp(prefix="image", dir=tmp)
        rootfs = os.path.join(image_dir, "rootfs")
        merge_filesystems(closure, rootfs)

        annotate_manifest(manifest, closure)
        write_manifest(manifest, os.path.join(image_dir, "manifest"))

        packer.pack(image_dir, image)
        return closure
    finally:
        _remove_work_dir(tmp)


##############################################################################
# Main CLI entry point
##############################################################################

FETCHERS = ("apt", "repository")
PACKERS = {"actool": ActoolPacker, "tar": TarPacker}


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="deb-image",
        description="Convert Debian packages and their dependencies into an ACI image.",
        formatter_class=argparse.RawTextHelpFormatter,
    )
    parser.add_argument(
        '--pkg', action='append', default=[], metavar='NAME',
        help='Package to put in the image. Repeat for more packages.')
    parser.add_argument('--image', required=True, help='Output image path (e.g. app.aci).')
    parser.add_argument(
        '--manifest', required=True,
        help='Base ImageManifest (JSON). Package annotations are appended to it.')
    parser.add_argument(
        '--fetcher', choices=FETCHERS, default='apt',
        help=(
            'How packages are fetched:\n'
            '  apt         - `apt-get download` on this host (default)\n'
            '  repository  - Packages indexes saved by update-repository, .deb\n'
            '                files downloaded from --base-url'
        ))
    parser.add_argument(
        '--repository-dir', default='./repository',
        help='Where update-repository saved the Packages indexes (repository fetcher).')
    parser.add_argument(
        '--base-url', default='https://archive.ubuntu.com/ubuntu',
        help='Comma-separated archive base URLs, tried in order (repository fetcher).')
    parser.add_argument(
        '--packer', choices=sorted(PACKERS), default='actool',
        help='actool (default) runs `actool build`; tar writes the ACI itself.')
    return parser


def make_fetcher_factory(args: argparse.Namespace) -> Callable[[str], Any]:
    if args.fetcher == "repository":
        base_urls = [u.strip() for u in args.base_url.split(',') if u.strip()]
        return functools.partial(
            RepositoryFetcher, repo_dir=args.repository_dir, base_urls=base_urls)
    return AptGetFetcher


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    if not args.pkg:
        parser.error("supply at least one package (--pkg NAME)")
    if args.fetcher == "repository" and not args.base_url.strip(', '):
        parser.error("the repository fetcher needs at least one --base-url")

    image = os.path.abspath(args.image)
    print(f"deb-image: will convert packages {args.pkg} and archive to {image}")
    try:
        manifest = read_manifest(args.manifest)
        convert(args.pkg, image, manifest, make_fetcher_factory(args), PACKERS[args.packer]())
    except ConversionError as e:
        print(f"deb-image: ERROR: {e}", file=sys.stderr)
        return 1
    print(f"deb-image: here you go: {image}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
