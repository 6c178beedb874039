from __future__ import annotations

import pytest
from PIL import Image


class InMemoryImageStore:
    def __init__(self) -> None:
        self.images: dict[str, Image.Image] = {}
        self.saved: list[str] = []

    def add(self, name: str, image: Image.Image) -> str:
        self.images[name] = image
        return name

    def get_image(self, name: str) -> Image.Image | None:
        image = self.images.get(name)
        # Callers close what they get back.
        return image.copy() if image is not None else None

    def save_image(self, kind: str, image: Image.Image) -> str:
        name = f"{len(self.saved)}.{kind}.png"
        self.images[name] = image.copy()
        self.saved.append(name)
        return name


@pytest.fixture
def store() -> InMemoryImageStore:
    return InMemoryImageStore()
