"""Data models for boards, FAT timestamps, and program images."""

from .pi_model import PiModel, pi_model_from_revision
from .file_formats import ProgramImage, load_image
