"""Writes reconstructed appearance images for inspection during registration."""

import logging
from pathlib import Path

import itk

from appearancereg.appearancereg_base import AppearanceRegBase
from appearancereg.metric_interfaces import DiagnosticImageWriterBase


class ReconstructedImageWriter(AppearanceRegBase, DiagnosticImageWriterBase):
    """Writes each reconstructed image to ``output_directory``.

    Files are named ``{filename_prefix}_{iteration_tag}{extension}``.

    Args:
        output_directory: Directory receiving the images; created if missing
        filename_prefix: Default: 'reconstructed'
        extension: Any extension supported by itk.imwrite. Default: '.mha'
        compression: Compress the written images. Default: True
        log_level: Logging level. Default: logging.INFO
    """

    def __init__(
        self,
        output_directory: str | Path,
        filename_prefix: str = "reconstructed",
        extension: str = ".mha",
        compression: bool = True,
        log_level: int | str = logging.INFO,
    ):
        super().__init__(class_name="ReconstructedImageWriter", log_level=log_level)
        self.output_directory = Path(output_directory)
        self.filename_prefix = filename_prefix
        self.extension = extension
        self.compression = compression
        self.written_files: list[Path] = []

    def write(self, image, iteration_tag: str) -> None:
        self.output_directory.mkdir(parents=True, exist_ok=True)
        filename = self.output_directory / (
            f"{self.filename_prefix}_{iteration_tag}{self.extension}"
        )
        itk.imwrite(image, str(filename), compression=self.compression)
        self.written_files.append(filename)
        self.log_debug("Wrote reconstructed image %s", filename)
