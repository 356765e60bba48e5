# Overview: Receipt storage boundary; accepts an uploaded image and returns an opaque reference.

from __future__ import annotations

import os
import uuid

from flask import current_app
from werkzeug.datastructures import FileStorage
from werkzeug.utils import secure_filename

from ..errors import ValidationError


class ReceiptStore:
    """Accepts an opaque upload and returns an opaque reference string."""

    def save(self, image: FileStorage) -> str:
        raise NotImplementedError

    def discard(self, ref: str) -> None:
        """Drop a stored upload. Stores that cannot delete may ignore this."""


class LocalReceiptStore(ReceiptStore):
    """
    Stores receipt images on the local filesystem.

    - Only image/* uploads are accepted.
    - Uploads larger than max_bytes are rejected.
    - Files get a random name; the original filename only contributes its extension.
    """

    def __init__(self, root: str, max_bytes: int):
        self.root = root
        self.max_bytes = max_bytes

    def save(self, image: FileStorage) -> str:
        if image is None or not image.filename:
            raise ValidationError("No receipt image provided")

        if not (image.mimetype or "").startswith("image/"):
            raise ValidationError("Only image files are allowed")

        data = image.stream.read(self.max_bytes + 1)
        if not data:
            raise ValidationError("Receipt image is empty")
        if len(data) > self.max_bytes:
            raise ValidationError(
                f"Receipt image exceeds {self.max_bytes} bytes",
                max_bytes=self.max_bytes,
            )

        _, ext = os.path.splitext(secure_filename(image.filename))
        name = f"{uuid.uuid4().hex}{ext.lower()}"

        os.makedirs(self.root, exist_ok=True)
        with open(os.path.join(self.root, name), "wb") as fh:
            fh.write(data)

        return f"receipts/{name}"

    def discard(self, ref: str) -> None:
        name = secure_filename(ref.rsplit("/", 1)[-1])
        path = os.path.join(self.root, name)
        if name and os.path.exists(path):
            os.remove(path)
            current_app.logger.info("Discarded receipt %s", ref)


def get_receipt_store() -> ReceiptStore:
    """
    Resolve the app's receipt store.

    An app may register its own store under app.extensions["receipt_store"];
    otherwise a LocalReceiptStore rooted at RECEIPT_UPLOAD_DIR (relative paths
    resolve against the instance folder) is used.
    """
    store = current_app.extensions.get("receipt_store")
    if store is not None:
        return store

    root = current_app.config["RECEIPT_UPLOAD_DIR"]
    if not os.path.isabs(root):
        root = os.path.join(current_app.instance_path, root)
    return LocalReceiptStore(root, current_app.config["RECEIPT_MAX_BYTES"])
