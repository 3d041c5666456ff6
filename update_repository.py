import argparse
import gzip
import lzma
import os
import sys
from typing import List, Optional
from urllib.parse import urlparse

import requests

from image_model import FetchError

"""
Download the Packages indexes that `deb-image --fetcher repository` reads.

For every suite/component pair this fetches
    <base-url>/<suite>/<component>/binary-<arch>/Packages.gz   (or .xz)
and saves it decompressed as
    <repository-dir>/<host>-<suite>-<component>-binary-<arch>.txt
"""

REPO_DIR = './repository'
REQUEST_TIMEOUT = 30


def _get(url: str) -> Optional[bytes]:
    """Return the body of `url`, or None on 404. Anything else raises FetchError."""
    print(f"Downloading: {url}")
    try:
        response = requests.get(url, timeout=REQUEST_TIMEOUT)
        if response.status_code == 404:
            return None
        response.raise_for_status()
    except requests.exceptions.RequestException as e:
        raise FetchError(f"Failed to download {url}: {e}", url=url) from e
    return response.content


def download_index(url: str, output_path: str) -> bool:
    """
    Fetch one Packages index and write it decompressed to `output_path`.

    Tries `url` (a .gz) first and falls back to the .xz sibling when the
    mirror only has that. Returns False when neither exists.
    """
    candidates = [url]
    if url.endswith('.gz'):
        candidates.append(url[:-3] + '.xz')

    for candidate in candidates:
        body = _get(candidate)
        if body is None:
            print(f"Not found (404): {candidate}")
            continue
        try:
            if candidate.endswith('.xz'):
                data = lzma.decompress(body)
            else:
                data = gzip.decompress(body)
        except (OSError, EOFError, lzma.LZMAError) as e:
            raise FetchError(f"Failed to decompress {candidate}: {e}", url=candidate) from e

        with open(output_path, 'wb') as f_out:
            f_out.write(data)
        print(f"Extracted and saved to: {output_path}")
        return True
    return False


def update_repository(
    repo_dir: str,
    base_url: str,
    suites: List[str],
    components: List[str],
    arch: str,
) -> List[str]:
    """
    Refresh `repo_dir` with one index file per suite/component.

    A missing index is skipped with a warning, and so is any other failure of
    a single suite/component: one broken pocket shouldn't cost us the rest.
    Returns the paths written.
    """
    os.makedirs(repo_dir, exist_ok=True)
    host = urlparse(base_url).netloc.replace('.', '-')
    platform = f"binary-{arch}"

    written: List[str] = []
    for suite in suites:
        for component in components:
            url = f"{base_url.rstrip('/')}/{suite}/{component}/{platform}/Packages.gz"
            output_path = os.path.join(repo_dir, f"{host}-{suite}-{component}-{platform}.txt")
            try:
                if download_index(url, output_path):
                    written.append(output_path)
                else:
                    print(f"Warning: no Packages index for {suite}/{component}. Skipping.")
            except (FetchError, OSError) as e:
                print(f"Error processing {suite}/{component}: {e}", file=sys.stderr)
                print("Continuing with the next item...")
    return written


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="update-repository",
        description="Download Packages indexes for the deb-image repository fetcher.",
        formatter_class=argparse.RawTextHelpFormatter
    )
    parser.add_argument('--repository-dir', default=REPO_DIR, help='Where to save the index files.')
    parser.add_argument(
        '--base-url',
        default='https://archive.ubuntu.com/ubuntu/dists',
        help='The "dists" URL of the archive.'
    )
    parser.add_argument(
        '--suites',
        nargs='+',
        default=['noble', 'noble-updates', 'noble-security'],
        help='A space-separated list of suites (e.g., noble noble-updates).'
    )
    parser.add_argument(
        '--components',
        nargs='+',
        default=['main', 'restricted', 'universe', 'multiverse'],
        help='A space-separated list of components (e.g., main universe).'
    )
    parser.add_argument('--arch', default='amd64', help='Target architecture (e.g., amd64, arm64).')
    args = parser.parse_args(argv)

    written = update_repository(
        args.repository_dir, args.base_url, args.suites, args.components, args.arch)
    print(f"\nRepository update finished: {len(written)} index file(s) in {args.repository_dir}.")
    return 0 if written else 1


if __name__ == "__main__":
    sys.exit(main())
