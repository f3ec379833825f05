"""Archive and paginated-document builders for a job's screenshots.

The document is A4 by default. Every screenshot is scaled to the content
width (never enlarged) and, when it is still taller than one page, cut into
overlapping horizontal bands so nothing falls between two pages.
"""

from __future__ import annotations

import asyncio
import logging
import math
import os
import re
import shutil
import time
import zipfile
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import AsyncIterator, Dict, List

import pyvips
from PIL import Image, ImageDraw, ImageFont

from .processor import url_from_filename
from .settings import BundleSettings
from .store import JobPaths, JobRecord, JobStateError, JobStatus, Store

LOGGER = logging.getLogger(__name__)

UNKNOWN_URL = "Unknown URL"

_INDEX_PATTERN = re.compile(r"^page-(\d+)-")


class BundlingError(RuntimeError):
    """Raised when an archive or document cannot be produced."""


@dataclass(frozen=True, slots=True)
class Band:
    """One horizontal slice of a source image, in source pixels."""

    index: int
    top: int
    height: int


@dataclass(frozen=True, slots=True)
class ArchiveResult:
    path: Path
    size: int
    images: int


@dataclass(frozen=True, slots=True)
class DocumentResult:
    path: Path
    pages: int
    images: int


@dataclass
class _JobLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


def plan_bands(height: int, pixels_per_page: int, overlap: int) -> List[Band]:
    """Split ``height`` source pixels into page-sized bands.

    Consecutive bands share ``overlap`` pixels. The band count is
    ``ceil((height - overlap) / (pixels_per_page - overlap))``.
    """

    if height <= 0:
        raise ValueError("height must be positive")
    if height <= pixels_per_page:
        return [Band(index=0, top=0, height=height)]
    stride = pixels_per_page - overlap
    if stride <= 0:
        raise ValueError("overlap must be smaller than the page height in pixels")
    count = math.ceil((height - overlap) / stride)
    bands: List[Band] = []
    for index in range(count):
        top = index * stride
        bands.append(Band(index=index, top=top, height=min(pixels_per_page, height - top)))
    return bands


def band_header(url: str, band: Band, total: int) -> str:
    if band.index == 0:
        return url
    return f"{url} (continued {band.index + 1}/{total})"


def list_screenshots(screenshots_dir: Path) -> List[Path]:
    """Captured PNGs ordered by their 1-based page number, then name."""

    if not screenshots_dir.is_dir():
        return []

    def _key(path: Path) -> tuple[float, str]:
        match = _INDEX_PATTERN.match(path.name)
        return (int(match.group(1)) if match else math.inf, path.name)

    return sorted((path for path in screenshots_dir.glob("*.png") if path.is_file()), key=_key)


class ArtifactBundler:
    """Builds ``screenshots-<job>.zip`` and ``screenshots-<job>.pdf``.

    Builds for the same job are serialized; both outputs are rewritten in
    place on every call.
    """

    def __init__(self, *, store: Store, settings: BundleSettings) -> None:
        self._store = store
        self._settings = settings
        self._locks: Dict[str, _JobLock] = {}

    @property
    def pending_jobs(self) -> int:
        """Jobs with a build running or waiting."""

        return len(self._locks)

    @asynccontextmanager
    async def _serialized(self, job_id: str) -> AsyncIterator[None]:
        entry = self._locks.get(job_id)
        if entry is None:
            entry = self._locks[job_id] = _JobLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if not entry.users:
                del self._locks[job_id]

    async def build_archive(self, job_id: str) -> ArchiveResult:
        async with self._serialized(job_id):
            return await asyncio.to_thread(self._build_archive_sync, job_id)

    async def build_document(self, job_id: str) -> DocumentResult:
        async with self._serialized(job_id):
            return await asyncio.to_thread(self._build_document_sync, job_id)

    async def ensure_archive(self, job_id: str) -> Path:
        """Return the job's archive, building it if it is missing or stale."""

        record = await asyncio.to_thread(self._check_job, job_id)
        if record.archive_path and record.status == JobStatus.COMPLETED.value and Path(record.archive_path).is_file():
            return Path(record.archive_path)
        return (await self.build_archive(job_id)).path

    async def ensure_document(self, job_id: str) -> Path:
        record = await asyncio.to_thread(self._check_job, job_id)
        if record.document_path and record.status == JobStatus.COMPLETED.value and Path(record.document_path).is_file():
            return Path(record.document_path)
        return (await self.build_document(job_id)).path

    def _check_job(self, job_id: str) -> JobRecord:
        record = self._store.get_job(job_id)
        if record.status == JobStatus.CANCELLED.value:
            raise JobStateError(f"Job {job_id} was cancelled")
        return record

    # -- archive ----------------------------------------------------------------

    def _build_archive_sync(self, job_id: str) -> ArchiveResult:
        self._check_job(job_id)
        paths = self._store.paths_for(job_id)
        images = list_screenshots(paths.screenshots_dir)
        target = paths.archive_path
        partial_path = target.with_name(target.name + ".partial")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with zipfile.ZipFile(
                partial_path,
                "w",
                compression=zipfile.ZIP_DEFLATED,
                compresslevel=self._settings.compression_level,
            ) as bundle:
                for image in images:
                    bundle.write(image, arcname=f"screenshots/{image.name}")
            os.replace(partial_path, target)
            size = target.stat().st_size
        except (OSError, zipfile.LargeZipFile) as exc:
            partial_path.unlink(missing_ok=True)
            raise BundlingError(f"Archive for job {job_id} failed: {exc}") from exc
        self._store.set_archive(job_id, path=target, size=size)
        LOGGER.info("Wrote archive %s (%d image(s), %d bytes)", target, len(images), size)
        return ArchiveResult(path=target, size=size, images=len(images))

    # -- document ---------------------------------------------------------------

    def _build_document_sync(self, job_id: str) -> DocumentResult:
        record = self._check_job(job_id)
        paths = self._store.paths_for(job_id)
        images = list_screenshots(paths.screenshots_dir)
        if not images:
            raise BundlingError(f"Job {job_id} has no screenshots to bundle")
        urls = {path.name: url for _, url, path in self._store.completed_images(job_id)}
        target = paths.document_path
        partial_path = target.with_name(target.name + ".partial")
        writer = _PdfWriter(
            partial_path,
            resolution=72 * self._settings.render_scale,
            title=target.stem,
            stamp=(record.completed_at or record.created_at).utctimetuple(),
        )
        try:
            paths.slices_dir.mkdir(parents=True, exist_ok=True)
            for image_index, image_path in enumerate(images):
                url = urls.get(image_path.name) or url_from_filename(image_path.name) or UNKNOWN_URL
                for page in self._render_image(paths, image_index, image_path, url):
                    writer.add(page)
            os.replace(partial_path, target)
        except OSError as exc:
            partial_path.unlink(missing_ok=True)
            raise BundlingError(f"Document for job {job_id} failed: {exc}") from exc
        finally:
            shutil.rmtree(paths.slices_dir, ignore_errors=True)
        self._store.set_document(job_id, path=target)
        LOGGER.info("Wrote document %s (%d page(s) from %d image(s))", target, writer.pages, len(images))
        return DocumentResult(path=target, pages=writer.pages, images=len(images))

    def _render_image(self, paths: JobPaths, image_index: int, image_path: Path, url: str) -> List[Image.Image]:
        try:
            return self._render_bands(paths, image_index, image_path, url)
        except (pyvips.Error, OSError, ValueError) as exc:
            LOGGER.warning("Falling back to raw image for %s: %s", image_path.name, exc)
        try:
            return [self._render_raw(image_path, url)]
        except (OSError, ValueError) as exc:
            LOGGER.warning("Could not embed %s: %s", image_path.name, exc)
            return [self._render_placeholder(url, f"Screenshot unavailable: {image_path.name}")]

    def _render_bands(self, paths: JobPaths, image_index: int, image_path: Path, url: str) -> List[Image.Image]:
        cfg = self._settings
        source = pyvips.Image.new_from_file(str(image_path))
        scale = min(cfg.content_width_pt / source.width, 1.0)
        if source.height * scale <= cfg.content_height_pt:
            bands = [Band(index=0, top=0, height=source.height)]
        else:
            pixels_per_page = math.floor(cfg.content_height_pt / scale)
            bands = plan_bands(source.height, pixels_per_page, cfg.overlap_px)
        factor = scale * cfg.render_scale
        pages: List[Image.Image] = []
        for band in bands:
            slice_path = paths.slices_dir / f"slice-{image_index}-{band.index}.png"
            cropped = source.crop(0, band.top, source.width, band.height)
            cropped.resize(factor).write_to_file(str(slice_path))
            with Image.open(slice_path) as slice_image:
                page = self._blank_page(band_header(url, band, len(bands)))
                page.paste(slice_image.convert("RGB"), self._content_origin())
            pages.append(page)
        return pages

    def _render_raw(self, image_path: Path, url: str) -> Image.Image:
        with Image.open(image_path) as raw:
            page = self._blank_page(url)
            page.paste(raw.convert("RGB"), self._content_origin())
        return page

    def _render_placeholder(self, url: str, message: str) -> Image.Image:
        page = self._blank_page(url)
        draw = ImageDraw.Draw(page)
        draw.text(self._content_origin(), message, fill="black", font=self._font())
        return page

    def _content_origin(self) -> tuple[int, int]:
        cfg = self._settings
        return (round(cfg.margin_pt * cfg.render_scale), round((cfg.margin_pt + cfg.header_pt) * cfg.render_scale))

    def _font(self):
        return ImageFont.load_default(size=round(self._settings.header_font_size * self._settings.render_scale))

    def _blank_page(self, header: str) -> Image.Image:
        cfg = self._settings
        size = (round(cfg.page_width_pt * cfg.render_scale), round(cfg.page_height_pt * cfg.render_scale))
        page = Image.new("RGB", size, "white")
        draw = ImageDraw.Draw(page)
        font = self._font()
        max_width = cfg.content_width_pt * cfg.render_scale
        line_height = cfg.header_font_size * cfg.render_scale * 1.3
        max_lines = max(1, int(cfg.header_pt * cfg.render_scale // line_height))
        lines = _wrap(header, lambda text: draw.textlength(text, font=font), max_width)[:max_lines]
        top = cfg.margin_pt * cfg.render_scale
        for number, line in enumerate(lines):
            width = draw.textlength(line, font=font)
            left = (size[0] - width) / 2
            draw.text((left, top + number * line_height), line, fill="black", font=font)
        return page


class _PdfWriter:
    """Appends pages to a Pillow-written PDF one at a time.

    Document dates are pinned to ``stamp`` so rebuilding a job yields the same bytes.
    """

    def __init__(self, path: Path, *, resolution: float, title: str, stamp: time.struct_time) -> None:
        self._path = path
        self._resolution = resolution
        self._title = title
        self._stamp = stamp
        self.pages = 0

    def add(self, page: Image.Image) -> None:
        page.save(
            self._path,
            "PDF",
            resolution=self._resolution,
            append=self.pages > 0,
            title=self._title,
            creationDate=self._stamp,
            modDate=self._stamp,
        )
        page.close()
        self.pages += 1


def _wrap(text: str, measure, max_width: float) -> List[str]:
    """Greedy character wrap; URLs rarely have spaces to break on."""

    lines: List[str] = []
    current = ""
    for char in text:
        candidate = current + char
        if current and measure(candidate) > max_width:
            lines.append(current)
            current = char
        else:
            current = candidate
    lines.append(current)
    return lines
