from __future__ import annotations

import time
from pathlib import Path
from typing import Iterable

from flask import current_app
from werkzeug.datastructures import FileStorage
from werkzeug.utils import secure_filename

from .errors import ConstraintViolation, ExternalServiceFailure


class PhotoStorage:
    """Append-only object store for work-order photos, keyed ``<work_order_id>/<ts>-<name>``."""

    service_name = "Photo storage"

    def __init__(self, root: str | Path, allowed_extensions: Iterable[str]):
        self.root = Path(root)
        self.allowed_extensions = frozenset(ext.lower().lstrip(".") for ext in allowed_extensions)

    @classmethod
    def from_app(cls) -> "PhotoStorage":
        return cls(
            current_app.config["PHOTO_STORAGE_DIR"],
            current_app.config.get("PHOTO_ALLOWED_EXTENSIONS", ()),
        )

    def clean_filename(self, upload: FileStorage) -> str:
        filename = secure_filename(upload.filename or "")
        if not filename:
            raise ConstraintViolation("Photo file name is missing", field="photos")
        extension = filename.rsplit(".", 1)[-1].lower() if "." in filename else ""
        if extension not in self.allowed_extensions:
            allowed = ", ".join(sorted(self.allowed_extensions))
            raise ConstraintViolation(f"Unsupported photo type '{extension or filename}'. Allowed: {allowed}", field="photos")
        return filename

    def save(self, work_order_id: str, upload: FileStorage) -> str:
        filename = self.clean_filename(upload)
        key = f"{work_order_id}/{time.time_ns() // 1000}-{filename}"
        target = self.root / key
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            # Never overwrite an existing object
            with open(target, "xb") as handle:
                upload.save(handle)
        except FileExistsError as exc:
            raise ExternalServiceFailure(self.service_name, f"object {key} already exists") from exc
        except OSError as exc:
            raise ExternalServiceFailure(self.service_name, str(exc)) from exc
        current_app.logger.info("Stored photo %s (%s)", key, upload.mimetype or "unknown type")
        return key

    def path_for(self, key: str) -> Path:
        resolved = (self.root / key).resolve()
        if self.root.resolve() not in resolved.parents:
            raise ConstraintViolation("Invalid photo key", field="file_path")
        return resolved


__all__ = ["PhotoStorage"]
