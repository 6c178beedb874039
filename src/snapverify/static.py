from __future__ import annotations

import logging
import uuid
from pathlib import Path
from typing import Protocol

from PIL import Image

from snapverify.conf import settings

logger = logging.getLogger(__name__)


class ImageStore(Protocol):
    def get_image(self, name: str) -> Image.Image | None:
        """
        Returns the decoded image, or None when nothing is stored under `name`.
        """
        ...

    def save_image(self, kind: str, image: Image.Image) -> str:
        """
        Persists `image` and returns the name it can be fetched back with.
        """
        ...


class FileSystemImageStore:
    def __init__(self, root: str | Path | None = None) -> None:
        self.root = Path(root if root is not None else settings.IMG_UPLOAD_FOLDER)

    def _path(self, name: str) -> Path:
        # Names are flat identifiers; never let them escape the upload folder.
        return self.root / Path(name).name

    def get_image(self, name: str) -> Image.Image | None:
        path = self._path(name)
        if not path.is_file():
            logger.warning("static: image not found", extra={"image_name": name})
            return None
        img = Image.open(path)
        try:
            img.load()
        except Exception:
            img.close()
            raise
        return img

    def save_image(self, kind: str, image: Image.Image) -> str:
        self.root.mkdir(parents=True, exist_ok=True)
        name = f"{uuid.uuid4().hex}.{kind}.png"
        image.save(self._path(name), "PNG")
        return name
