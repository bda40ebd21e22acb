"""Application use cases for explorer workflows."""

from .folders import (
    ConvertFolderUseCase,
    CreateFolderUseCase,
    RenameFolderUseCase,
    validate_folder_name,
    validate_passphrase,
)
from .multipart import (
    PartPlan,
    PartProgress,
    UploadPartsUseCase,
    content_md5,
    plan_parts,
)

__all__ = [
    "ConvertFolderUseCase",
    "CreateFolderUseCase",
    "RenameFolderUseCase",
    "validate_folder_name",
    "validate_passphrase",
    "PartPlan",
    "PartProgress",
    "UploadPartsUseCase",
    "content_md5",
    "plan_parts",
]
