from __future__ import annotations


class CompareError(Exception):
    pass


class MissingImageError(CompareError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Image not found: {name}")
        self.name = name


class OdiffError(CompareError):
    pass
