from __future__ import annotations

from reporter.core.config import get_settings
from reporter.storage.base import ObjectStorage
from reporter.storage.s3 import S3ObjectStorage


def get_template_storage() -> ObjectStorage:
    # Template blobs are stored as "<templateID>.tpl".
    return S3ObjectStorage(get_settings().template_bucket)


def get_report_storage() -> ObjectStorage:
    # Rendered reports are written by the worker as "<templateID>/<reportID>.<format>".
    return S3ObjectStorage(get_settings().report_bucket)


__all__ = ["ObjectStorage", "S3ObjectStorage", "get_report_storage", "get_template_storage"]
