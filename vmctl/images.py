"""Local base image store for vmctl."""

from __future__ import annotations

import shutil
import tempfile
import time
from pathlib import Path
from typing import Dict, List, Optional, Tuple
from urllib.parse import urlparse

import requests

from vmctl.constants import IMAGE_EXTENSIONS
from vmctl.exceptions import ImageNotFound, ManagerError
from vmctl.models import Image
from vmctl.utils import ensure_directory, log

REQUEST_TIMEOUT = 60
CHUNK_SIZE = 1024 * 256  # 256 KiB


def _local_file_name(name: str) -> str:
    if name.endswith(IMAGE_EXTENSIONS):
        return name
    return f"{name}.img"


class ImageStore:
    """Catalog of known images plus the files already present in ``images_dir``."""

    def __init__(
        self,
        images_dir: Path,
        catalog: Dict[str, Tuple[str, Optional[str]]],
        session: Optional[requests.Session] = None,
    ) -> None:
        self.images_dir = images_dir
        self.catalog = catalog
        self._session = session

    def _image(self, name: str) -> Image:
        url, arch = self.catalog.get(name, ("", None))
        return Image(name=name, url=url, local_path=self.images_dir / _local_file_name(name), arch=arch)

    def list_images(self) -> List[Image]:
        """Every catalog entry plus any unlisted image file on disk, sorted by name."""
        images = {name: self._image(name) for name in self.catalog}
        if self.images_dir.exists():
            for path in sorted(self.images_dir.iterdir()):
                if not path.is_file() or not path.name.endswith(IMAGE_EXTENSIONS):
                    continue
                stem = path.stem if path.suffix == ".img" else path.name
                if stem not in images and path.name not in images:
                    images[path.name] = Image(name=path.name, url="", local_path=path)
        return [images[name] for name in sorted(images)]

    def lookup(self, name: str) -> Image:
        """Return an image that exists locally, without downloading it."""
        image = self._image(name)
        if image.downloaded:
            return image
        candidate = self.images_dir / name
        if candidate.is_file():
            return Image(name=name, url=image.url, local_path=candidate, arch=image.arch)
        raise ImageNotFound(
            f"Base image '{name}' is not available locally in {self.images_dir}. "
            f"Run 'vmctl download-image {name}' first."
        )

    def download(self, name: str, url: Optional[str] = None, force: bool = False) -> Image:
        """Fetch ``name`` from the catalog, or from ``url`` when one is given."""
        image = self._image(name)
        if url:
            if urlparse(url).scheme not in ("http", "https"):
                raise ManagerError(f"Unsupported image URL '{url}' (expected http or https)")
            image = Image(name=name, url=url, local_path=image.local_path, arch=image.arch)
        if image.downloaded and not force:
            log("INFO", f"Image {name} already present at {image.local_path}")
            return image
        if not image.url:
            raise ImageNotFound(
                f"Unknown image '{name}'. Known images: {', '.join(sorted(self.catalog))}. "
                f"Pass a URL to download any other image."
            )

        ensure_directory(self.images_dir)
        cached = Path.home() / "Downloads" / Path(urlparse(image.url).path).name
        if cached.is_file() and not force:
            log("INFO", f"Reusing {cached} for image {name}")
            self._copy(cached, image.local_path)
            return image

        self._fetch(image.url, image.local_path, label=f"Downloading {name}")
        return image

    @staticmethod
    def _copy(source: Path, destination: Path) -> None:
        """Copy into a temp file beside ``destination`` then rename it in place."""
        with tempfile.NamedTemporaryFile(delete=False, dir=destination.parent, suffix=".download") as tmp:
            tmp_path = Path(tmp.name)
        try:
            shutil.copyfile(source, tmp_path)
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise
        tmp_path.replace(destination)

    def _fetch(self, url: str, destination: Path, label: str) -> None:
        """Stream ``url`` into a temp file beside ``destination`` then rename it in place."""
        log("INFO", f"{label}: {url}")
        session = self._session or requests.Session()
        session.headers.update({"User-Agent": "vmctl/0.1"})
        try:
            response = session.get(url, stream=True, timeout=REQUEST_TIMEOUT, allow_redirects=True)
            response.raise_for_status()
        except requests.RequestException as exc:
            raise ManagerError(f"Failed to download {url}: {exc}")

        total = response.headers.get("Content-Length")
        total_bytes = int(total) if total else None
        downloaded = 0
        start_time = time.time()

        with tempfile.NamedTemporaryFile(delete=False, dir=destination.parent, suffix=".download") as tmp:
            tmp_path = Path(tmp.name)
            try:
                for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                    if not chunk:
                        continue
                    tmp.write(chunk)
                    downloaded += len(chunk)
                    if total_bytes:
                        pct = downloaded * 100 / total_bytes
                        print(
                            f"\r  {pct:5.1f}% {downloaded / (1024 * 1024):.1f}/{total_bytes / (1024 * 1024):.1f} MiB",
                            end="",
                            flush=True,
                        )
                print(flush=True)
            except requests.RequestException as exc:
                tmp_path.unlink(missing_ok=True)
                raise ManagerError(f"Download of {url} interrupted: {exc}")
            except Exception:
                tmp_path.unlink(missing_ok=True)
                raise
            finally:
                response.close()
        tmp_path.replace(destination)
        elapsed = time.time() - start_time
        log("SUCCESS", f"Downloaded {downloaded / (1024 * 1024):.1f} MiB in {elapsed:.1f}s")

    def delete(self, name: str) -> None:
        image = self.lookup(name)
        image.local_path.unlink()
        log("INFO", f"Deleted image {name} ({image.local_path})")
