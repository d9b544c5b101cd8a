"""File-backed storage for image sets and project attachments.

Layout under the storage root:

    sets/{set_id}/set.json              set record (name, prompts, images)
    sets/{set_id}/{image_id}.png        generated images with PNG text metadata
    projects/{project_id}/attachments/{attachment_id}.{ext}
"""

import json
import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from image_generator import ReferenceImage
from utils import ensure_within, guess_mime_type, write_png_with_metadata

logger = logging.getLogger(__name__)

_ID_PATTERN = re.compile(r'^[A-Za-z0-9_-]{1,100}$')

_EXTENSIONS = {
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/webp": ".webp",
    "image/gif": ".gif",
}
_MIME_TYPES = {extension: mime_type for mime_type, extension in _EXTENSIONS.items()}


class SetStoreError(Exception):
    """Raised when a storage operation fails."""
    pass


class SetNotFoundError(SetStoreError):
    """Set does not exist."""
    pass


class AttachmentNotFoundError(SetStoreError):
    """Attachment does not exist."""
    pass


@dataclass
class StoredImage:
    """An image saved into a set."""
    id: str
    filename: str
    prompt: str = ""
    created_at: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> "StoredImage":
        return cls(
            id=data["id"],
            filename=data["filename"],
            prompt=data.get("prompt", ""),
            created_at=data.get("created_at", ""),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "filename": self.filename,
            "prompt": self.prompt,
            "created_at": self.created_at,
        }


@dataclass
class SetRecord:
    """Structured representation of a set."""

    id: str
    project_id: str | None = None
    name: str = ""
    prompts: list[str] = field(default_factory=list)
    images: list[StoredImage] = field(default_factory=list)
    created_at: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> "SetRecord":
        """Create a SetRecord from a dictionary."""
        return cls(
            id=data["id"],
            project_id=data.get("project_id"),
            name=data.get("name", ""),
            prompts=list(data.get("prompts", [])),
            images=[StoredImage.from_dict(item) for item in data.get("images", [])],
            created_at=data.get("created_at", ""),
        )

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "project_id": self.project_id,
            "name": self.name,
            "prompts": self.prompts,
            "images": [image.to_dict() for image in self.images],
            "created_at": self.created_at,
        }


@dataclass
class SaveResult:
    """Outcome of saving one image: a public URL or an error."""
    image_id: str
    prompt: str
    url: str | None = None
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.url is not None


def validate_id(value: str, kind: str = "id") -> str:
    """Reject identifiers that are not safe to use as path components."""
    if not _ID_PATTERN.match(value or ""):
        raise ValueError(f"Invalid {kind}: {value!r}")
    return value


class SetStore:
    """Stores generated images per set and reference attachments per project."""

    def __init__(self, root_dir: Path, url_prefix: str = "/files"):
        """Initialize the store.

        Args:
            root_dir: Storage root directory
            url_prefix: URL path under which root_dir is served
        """
        self.root_dir = root_dir
        self.url_prefix = url_prefix.rstrip("/")

    @property
    def sets_dir(self) -> Path:
        return self.root_dir / "sets"

    @property
    def projects_dir(self) -> Path:
        return self.root_dir / "projects"

    def url_for(self, path: Path) -> str:
        """Public URL of a stored file."""
        relative = ensure_within(path, self.root_dir).relative_to(self.root_dir.resolve())
        return f"{self.url_prefix}/{relative.as_posix()}"

    def _set_dir(self, set_id: str) -> Path:
        set_dir = self.sets_dir / validate_id(set_id, "set id")
        ensure_within(set_dir, self.sets_dir)
        return set_dir

    def _record_path(self, set_id: str) -> Path:
        return self._set_dir(set_id) / "set.json"

    def _write_record(self, record: SetRecord) -> None:
        path = self._record_path(record.id)
        path.parent.mkdir(parents=True, exist_ok=True)
        # Write to temp file first, then atomic rename
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(record.to_dict(), indent=2))
        tmp_path.rename(path)

    def create_set(self, name: str, project_id: str | None = None, set_id: str | None = None) -> SetRecord:
        """Create a new empty set.

        Args:
            name: Display name
            project_id: Owning project, if any
            set_id: Explicit id (a new UUID if omitted)

        Returns:
            The created record
        """
        if project_id is not None:
            validate_id(project_id, "project id")
        record = SetRecord(
            id=set_id or str(uuid.uuid4()),
            project_id=project_id,
            name=name.strip(),
            created_at=datetime.now().isoformat(),
        )
        self._write_record(record)
        return record

    def get_set(self, set_id: str) -> SetRecord:
        """Load a set record.

        Raises:
            SetNotFoundError: If the set does not exist
        """
        path = self._record_path(set_id)
        if not path.exists():
            raise SetNotFoundError(f"Set not found: {set_id}")
        try:
            return SetRecord.from_dict(json.loads(path.read_text()))
        except (json.JSONDecodeError, KeyError) as e:
            raise SetStoreError(f"Corrupted set record {set_id}: {e}") from e

    def _get_or_create_set(self, set_id: str) -> SetRecord:
        try:
            return self.get_set(set_id)
        except SetNotFoundError:
            logger.info(f"Creating set record for {set_id}")
            return self.create_set(name=f"Set {set_id}", set_id=set_id)

    def record_prompts(self, set_id: str, prompts: list[str]) -> SetRecord:
        """Store the sub-prompts a set was generated from."""
        record = self._get_or_create_set(set_id)
        record.prompts = list(prompts)
        self._write_record(record)
        return record

    def save_images(self, set_id: str, images: list[tuple[bytes, str]]) -> list[SaveResult]:
        """
        Save generated images into a set.

        Each image is converted to PNG with its prompt embedded as PNG text.
        A failure for one image does not stop the others.

        Args:
            set_id: Target set (created if missing)
            images: (image bytes, originating prompt) pairs

        Returns:
            One SaveResult per input image, in order
        """
        record = self._get_or_create_set(set_id)
        set_dir = self._set_dir(set_id)
        results = []

        for image_bytes, prompt in images:
            image_id = str(uuid.uuid4())
            filename = f"{image_id}.png"
            created_at = datetime.now().isoformat()
            try:
                path = write_png_with_metadata(
                    image_bytes,
                    set_dir / filename,
                    {"prompt": prompt, "set_id": set_id, "created_at": created_at},
                )
            except (ValueError, OSError) as e:
                logger.warning(f"Failed to save image for set {set_id}: {e}")
                results.append(SaveResult(image_id=image_id, prompt=prompt, error=str(e)))
                continue

            record.images.append(StoredImage(id=image_id, filename=filename, prompt=prompt, created_at=created_at))
            results.append(SaveResult(image_id=image_id, prompt=prompt, url=self.url_for(path)))

        self._write_record(record)
        return results

    def image_urls(self, record: SetRecord) -> list[dict]:
        """List a set's images with public URLs, skipping files that are gone."""
        set_dir = self._set_dir(record.id)
        images = []
        for image in record.images:
            path = set_dir / image.filename
            if not path.exists():
                logger.warning(f"Image file missing for {image.id} in set {record.id}")
                continue
            images.append({"id": image.id, "url": self.url_for(path), "prompt": image.prompt})
        return images

    def _attachments_dir(self, project_id: str) -> Path:
        attachments_dir = self.projects_dir / validate_id(project_id, "project id") / "attachments"
        ensure_within(attachments_dir, self.projects_dir)
        return attachments_dir

    def save_attachment(self, project_id: str, data: bytes, mime_type: str = "image/png") -> str:
        """Store a reference image for a project.

        Returns:
            The new attachment id
        """
        attachment_id = str(uuid.uuid4())
        extension = _EXTENSIONS.get(mime_type, ".png")
        attachments_dir = self._attachments_dir(project_id)
        attachments_dir.mkdir(parents=True, exist_ok=True)
        (attachments_dir / f"{attachment_id}{extension}").write_bytes(data)
        return attachment_id

    def load_attachment(self, project_id: str, attachment_id: str) -> ReferenceImage:
        """Load a project attachment as a reference image.

        Raises:
            AttachmentNotFoundError: If the attachment does not exist
        """
        validate_id(attachment_id, "attachment id")
        attachments_dir = self._attachments_dir(project_id)
        matches = sorted(attachments_dir.glob(f"{attachment_id}.*")) if attachments_dir.exists() else []
        if not matches:
            raise AttachmentNotFoundError(f"Attachment not found: {attachment_id}")
        path = matches[0]
        mime_type = _MIME_TYPES.get(path.suffix.lower()) or guess_mime_type(path)
        return ReferenceImage(data=path.read_bytes(), mime_type=mime_type)
