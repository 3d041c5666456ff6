import json
import os
from typing import Dict, List, Optional

import pytest

from image_model import FetchError, ResolvedPackage


class FakeFetcher:
    """
    In-memory fetcher. `graph` maps a package name to its Depends string;
    `files` optionally maps a name to {relative path: content} for its tree.
    """

    def __init__(self, root: str, graph: Dict[str, str], files: Optional[Dict[str, Dict[str, str]]] = None):
        self.root = root
        self.graph = graph
        self.files = files or {}
        self.calls: List[str] = []

    def fetch(self, name: str) -> ResolvedPackage:
        self.calls.append(name)
        if name not in self.graph:
            raise FetchError(f"no such package {name!r}", package=name)
        tree = os.path.join(self.root, name, "out")
        os.makedirs(tree, exist_ok=True)
        for rel, content in self.files.get(name, {}).items():
            path = os.path.join(tree, rel)
            os.makedirs(os.path.dirname(path), exist_ok=True)
            with open(path, "w") as f:
                f.write(content)
        return ResolvedPackage(
            name=name,
            version="1.0-1",
            architecture="amd64",
            filesystem_path=tree,
            depends=self.graph[name],
        )


class RecordingPacker:
    def __init__(self):
        self.seen = None

    def pack(self, image_dir: str, image: str) -> None:
        with open(os.path.join(image_dir, "manifest")) as f:
            manifest = json.load(f)
        rootfs = os.path.join(image_dir, "rootfs")
        files = sorted(
            os.path.relpath(os.path.join(d, name), rootfs)
            for d, _, names in os.walk(rootfs) for name in names
        )
        self.seen = {"image_dir": image_dir, "manifest": manifest, "files": files}
        with open(image, "w") as f:
            f.write("image")


@pytest.fixture
def base_manifest() -> dict:
    return {
        "acKind": "ImageManifest",
        "acVersion": "0.8.11",
        "name": "example.com/app",
        "labels": [{"name": "os", "value": "linux"}],
        "annotations": [{"name": "authors", "value": "ops@example.com"}],
    }


@pytest.fixture
def fake_fetcher(tmp_path):
    def make(graph, files=None):
        return FakeFetcher(str(tmp_path / "fetched"), graph, files)
    return make
