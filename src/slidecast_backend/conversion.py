"""
Slide deck to page image conversion.

Converts a presentation to PDF with LibreOffice (``soffice``) and then
rasterizes each PDF page to PNG with poppler (``pdftoppm``). Both tools run
as asynchronous subprocesses. Generated files stay in the scratch directory;
deleting them is the caller's job.
"""

from __future__ import annotations

import asyncio
import logging
import re
from pathlib import Path
from typing import Iterable, Optional

from omegaconf import DictConfig

from .errors import ConversionFailed, InvalidInputKind, RasterizationFailed
from .utils import number_token, sort_by_number_token, split_extension

logger = logging.getLogger(__name__)

DEFAULT_EXTENSIONS = (".ppt", ".pptx", ".pps", ".ppsx")


async def _run(*command: str) -> tuple[int, str]:
    process = await asyncio.create_subprocess_exec(
        *command,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    _, stderr = await process.communicate()
    return process.returncode or 0, stderr.decode(errors="replace").strip()


class ConversionAdapter:
    def __init__(
        self,
        soffice_path: str = "soffice",
        pdftoppm_path: str = "pdftoppm",
        dpi: int = 150,
        page_prefix: str = "page",
        allowed_extensions: Iterable[str] = DEFAULT_EXTENSIONS,
    ) -> None:
        self.soffice_path = soffice_path
        self.pdftoppm_path = pdftoppm_path
        self.dpi = dpi
        self.page_prefix = page_prefix
        self.allowed_extensions = [ext.lower() for ext in allowed_extensions]
        self._page_pattern = re.compile(rf"^{re.escape(page_prefix)}-(\d+)\.png$")

    @classmethod
    def from_config(cls, config: DictConfig) -> "ConversionAdapter":
        return cls(
            soffice_path=config.conversion.soffice_path,
            pdftoppm_path=config.conversion.pdftoppm_path,
            dpi=config.conversion.dpi,
            page_prefix=config.conversion.page_prefix,
            allowed_extensions=list(config.pipeline.allowed_extensions),
        )

    def check_source(self, source: Path) -> str:
        _, ext = split_extension(source.name)
        if ext not in self.allowed_extensions:
            raise InvalidInputKind(ext, self.allowed_extensions)
        return ext

    async def convert(self, source: Path, scratch_dir: Optional[Path] = None) -> list[Path]:
        """
        Turn a slide deck into page images, in page order.

        Args:
            source: Presentation file with an allow-listed extension
            scratch_dir: Where intermediate files go (defaults to the source's directory)

        Returns:
            Paths of the page images, first page first
        """
        pdf_path = await self.to_pdf(source, scratch_dir)
        return await self.rasterize(pdf_path)

    async def to_pdf(self, source: Path, scratch_dir: Optional[Path] = None) -> Path:
        self.check_source(source)
        outdir = scratch_dir or source.parent
        logger.info(f"Converting {source.name} to PDF with {self.soffice_path}")
        try:
            code, stderr = await _run(
                self.soffice_path,
                "--headless",
                "--convert-to",
                "pdf",
                "--outdir",
                str(outdir),
                str(source),
            )
        except OSError as exc:
            raise ConversionFailed(f"Could not run {self.soffice_path}: {exc}") from exc
        if code != 0:
            raise ConversionFailed(f"Conversion failed: {stderr}")

        pdf_path = outdir / f"{source.stem}.pdf"
        if not pdf_path.exists():
            raise ConversionFailed(f"Conversion produced no PDF for {source.name}: {stderr}")
        logger.info(f"PDF generated: {pdf_path}")
        return pdf_path

    async def rasterize(self, pdf_path: Path) -> list[Path]:
        outdir = pdf_path.parent
        logger.info(f"Converting PDF to images: {pdf_path}")
        try:
            code, stderr = await _run(
                self.pdftoppm_path,
                "-png",
                "-r",
                str(self.dpi),
                str(pdf_path),
                str(outdir / self.page_prefix),
            )
        except OSError as exc:
            raise RasterizationFailed(f"Could not run {self.pdftoppm_path}: {exc}") from exc
        if code != 0:
            raise RasterizationFailed(f"Rasterization failed: {stderr}")

        pages = self.collect_pages(outdir)
        if not pages:
            raise RasterizationFailed(f"No page images were generated for {pdf_path.name}")
        logger.info(f"Generated images: {len(pages)} files")
        return pages

    def collect_pages(self, directory: Path) -> list[Path]:
        """Page images in ``directory``, sorted by their numeric page token."""
        candidates = [
            path for path in directory.iterdir() if number_token(path.name, self._page_pattern) is not None
        ]
        return sort_by_number_token(candidates, self._page_pattern)
