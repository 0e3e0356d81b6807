import uuid
from pathlib import Path

from werkzeug.utils import secure_filename

from marketplace import StorageFailure


PUBLIC_CATEGORIES = ("images", "qrcodes")
PRIVATE_CATEGORIES = ("payments", "projects")
CATEGORIES = PUBLIC_CATEGORIES + PRIVATE_CATEGORIES


class LocalObjectStore:
    """Stores uploads under ``root/<category>/`` with UUID names.

    ``store`` returns the public reference URL (``/uploads/<category>/<name>``);
    ``resolve`` maps such a URL back to a path on disk.
    """

    url_prefix = "/uploads"

    def __init__(self, root):
        self.root = Path(root).resolve()
        for category in CATEGORIES:
            (self.root / category).mkdir(parents=True, exist_ok=True)

    def store(self, file_obj, category):
        if category not in CATEGORIES:
            raise ValueError(f"unknown storage category: {category}")
        safe_name = secure_filename(getattr(file_obj, "filename", None) or "")
        if not safe_name:
            raise StorageFailure("Uploaded file has no usable name")
        extension = Path(safe_name).suffix.lower()
        unique_name = f"{uuid.uuid4().hex}{extension}"
        full_path = self.root / category / unique_name
        try:
            file_obj.save(full_path)
        except OSError as exc:
            raise StorageFailure(f"Could not write {category}/{unique_name}: {exc}") from exc
        return f"{self.url_prefix}/{category}/{unique_name}"

    def resolve(self, url):
        if not url or not url.startswith(self.url_prefix + "/"):
            return None
        parts = url[len(self.url_prefix) + 1:].split("/")
        if len(parts) != 2 or parts[0] not in CATEGORIES:
            return None
        category, name = parts
        if secure_filename(name) != name:
            return None
        path = self.root / category / name
        return path if path.is_file() else None
