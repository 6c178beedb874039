from __future__ import annotations

import logging
import platform
import select
import shutil
import subprocess
import tempfile
import threading
from collections.abc import Callable, Sequence
from pathlib import Path

import numpy as np
import orjson
from PIL import Image
from pydantic import BaseModel, ConfigDict, Field

from snapverify.compare.exceptions import OdiffError
from snapverify.compare.image_utils import (
    build_result,
    ignore_mask,
    load_images,
    outside_overlap_mask,
    persist_diff,
)
from snapverify.compare.types import (
    NO_BASELINE_RESULT,
    DiffResult,
    IgnoreArea,
    ImageCompareInput,
    OdiffResponse,
)
from snapverify.compare.utils import parse_config
from snapverify.static import ImageStore

logger = logging.getLogger(__name__)

ODIFF_PLATFORM_SUFFIXES = {
    ("arm64", "Darwin"): "macos-arm64",
    ("aarch64", "Darwin"): "macos-arm64",
    ("x86_64", "Darwin"): "macos-x64",
    ("x86_64", "Linux"): "linux-x64",
    ("aarch64", "Linux"): "linux-arm64",
    ("arm64", "Linux"): "linux-arm64",
}

ODIFF_TIMEOUT_S = 30


def find_odiff_binary() -> str:
    suffix = ODIFF_PLATFORM_SUFFIXES.get((platform.machine(), platform.system()))

    current = Path(__file__).resolve()
    for parent in current.parents:
        if (parent / "pyproject.toml").exists():
            if suffix:
                raw = parent / "node_modules" / "odiff-bin" / "raw_binaries" / f"odiff-{suffix}"
                if raw.exists():
                    return str(raw)
            break

    found = shutil.which("odiff")
    if found:
        return found
    raise FileNotFoundError("odiff binary not found. Run 'npm install odiff-bin' or put odiff on PATH.")


class OdiffServer:
    """
    Client for `odiff --server`, which reads one JSON request per line on stdin and
    answers with one JSON line on stdout. The process is started on first use and
    shared by every comparison; requests are serialised by a lock.
    """

    def __init__(self) -> None:
        self._process: subprocess.Popen[bytes] | None = None
        self._request_id = 0
        self._lock = threading.Lock()

    def __enter__(self) -> OdiffServer:
        with self._lock:
            if self._process is None:
                self._start()
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def _read_response(self, line: bytes) -> OdiffResponse:
        if not line:
            raise OdiffError("odiff server exited unexpectedly")
        try:
            return OdiffResponse.model_validate(orjson.loads(line))
        except ValueError as e:
            raise OdiffError(f"odiff sent an unreadable response: {line[:200]!r}") from e

    def _readline(self, proc: subprocess.Popen[bytes], what: str) -> bytes:
        assert proc.stdout is not None
        readable, _, _ = select.select([proc.stdout], [], [], ODIFF_TIMEOUT_S)
        if not readable:
            raise OdiffError(f"odiff server timed out after {ODIFF_TIMEOUT_S}s waiting for {what}")
        return proc.stdout.readline()

    def _start(self) -> subprocess.Popen[bytes]:
        binary = find_odiff_binary()
        proc = subprocess.Popen(
            [binary, "--server"],
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )
        try:
            line = self._readline(proc, "ready message")
            if not line or not orjson.loads(line).get("ready"):
                raise OdiffError("odiff server failed to start")
        except BaseException:
            _stop_process(proc, graceful=False)
            raise
        logger.info("odiff: server started", extra={"binary": binary, "pid": proc.pid})
        self._process = proc
        return proc

    def compare(
        self,
        base_path: str | Path,
        compare_path: str | Path,
        output_path: str | Path,
        **options: object,
    ) -> OdiffResponse:
        with self._lock:
            proc = self._process or self._start()
            assert proc.stdin is not None

            self._request_id += 1
            request: dict[str, object] = {
                "requestId": self._request_id,
                "base": str(base_path),
                "compare": str(compare_path),
                "output": str(output_path),
            }
            if options:
                request["options"] = options

            try:
                proc.stdin.write(orjson.dumps(request) + b"\n")
                proc.stdin.flush()
                response = self._read_response(self._readline(proc, "a response"))
            except (OSError, OdiffError) as e:
                # The protocol is out of step; the next request starts a fresh server.
                self._process = None
                _stop_process(proc, graceful=False)
                if isinstance(e, OdiffError):
                    raise
                raise OdiffError("odiff process died unexpectedly") from e

        if response.error:
            raise OdiffError(f"odiff error: {response.error}")
        return response

    def close(self) -> None:
        with self._lock:
            proc = self._process
            self._process = None
        if proc is not None:
            _stop_process(proc)


def _stop_process(proc: subprocess.Popen[bytes], graceful: bool = True) -> None:
    """
    Closing stdin asks the server to exit. A graceful stop waits for that before
    escalating to SIGTERM and then SIGKILL; otherwise the process is killed outright.
    """
    for stream in (proc.stdin, proc.stdout):
        if stream is not None:
            try:
                stream.close()
            except OSError:
                pass
    steps: tuple[Callable[[], None] | None, ...] = (
        (None, proc.terminate, proc.kill) if graceful else (proc.kill,)
    )
    for step in steps:
        if step is not None:
            step()
        try:
            proc.wait(timeout=5)
            return
        except subprocess.TimeoutExpired:
            continue


class OdiffConfig(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    # Colour difference threshold, 0 to 1; smaller is more sensitive.
    threshold: float = Field(default=0.1, ge=0, le=1)
    antialiasing: bool = True
    output_diff_mask: bool = Field(default=False, alias="outputDiffMask")
    allow_diff_dimensions: bool = Field(default=False, alias="allowDiffDimensions")


DEFAULT_CONFIG = OdiffConfig()


def ignore_regions(
    ignore_areas: Sequence[IgnoreArea], width: int, height: int
) -> list[dict[str, int]]:
    # odiff takes inclusive corner coordinates.
    regions = []
    for area in ignore_areas:
        bounds = area.bounds(width, height)
        if bounds is None:
            continue
        left, top, right, bottom = bounds
        regions.append({"x1": left, "y1": top, "x2": right - 1, "y2": bottom - 1})
    return regions


class OdiffComparator:
    def __init__(self, store: ImageStore, server: OdiffServer | None = None) -> None:
        self.store = store
        self.server = server if server is not None else OdiffServer()

    def close(self) -> None:
        self.server.close()

    def parse_config(self, config_json: str) -> OdiffConfig:
        return parse_config(config_json, DEFAULT_CONFIG)

    def get_diff(self, data: ImageCompareInput, config: OdiffConfig) -> DiffResult:
        if data.baseline is None:
            return NO_BASELINE_RESULT

        baseline, image = load_images(self.store, data)
        base_size, image_size = baseline.size, image.size
        width = max(base_size[0], image_size[0])
        height = max(base_size[1], image_size[1])
        # odiff only walks the baseline's area, so it gets the overlap and the pixels
        # outside it are counted here.
        overlap = (min(base_size[0], image_size[0]), min(base_size[1], image_size[1]))
        outside_count = int(
            np.count_nonzero(
                outside_overlap_mask(base_size, image_size)
                & ~ignore_mask(data.ignore_areas, width, height)
            )
        )

        with tempfile.TemporaryDirectory() as tmpdir:
            tmpdir_path = Path(tmpdir)
            base_path = tmpdir_path / "baseline.png"
            image_path = tmpdir_path / "image.png"
            try:
                _save_cropped(baseline, overlap, base_path)
                _save_cropped(image, overlap, image_path)
            finally:
                baseline.close()
                image.close()

            output_path = tmpdir_path / "diff.png"
            options: dict[str, object] = {
                "threshold": config.threshold,
                "antialiasing": config.antialiasing,
                "outputDiffMask": config.output_diff_mask,
                "failOnLayoutDiff": False,
            }
            regions = ignore_regions(data.ignore_areas, *overlap)
            if regions:
                options["ignoreRegions"] = regions

            resp = self.server.compare(base_path, image_path, output_path, **options)
            mismatch_count = (resp.diffCount or 0) + outside_count

            logger.debug(
                "odiff: compared images",
                extra={
                    "baseline": data.baseline,
                    "image": data.image,
                    "mismatch_count": mismatch_count,
                    "outside_overlap_count": outside_count,
                    "reason": resp.reason,
                },
            )

            diff_name = None
            if data.save_diff_as_file and mismatch_count > 0:
                if output_path.exists():
                    diff = Image.open(output_path)
                    diff.load()
                    diff_name = persist_diff(self.store, diff)
                else:
                    logger.warning(
                        "odiff did not produce output file",
                        extra={"output_path": str(output_path)},
                    )

        return build_result(
            mismatch_count,
            width,
            height,
            data.diff_tollerance_percent,
            base_size == image_size,
            diff_name,
            allow_diff_dimensions=config.allow_diff_dimensions,
        )


def _save_cropped(img: Image.Image, size: tuple[int, int], path: Path) -> None:
    if img.size == size:
        img.save(path, "PNG")
        return
    with img.crop((0, 0, *size)) as cropped:
        cropped.save(path, "PNG")
