"""
External collaborators used by case decisions.

Each collaborator is a Protocol so deployments can plug in real document
rendering, object storage, messaging and payment providers. The defaults
here render text documents with Jinja2, store them on the local filesystem
and log notifications and refunds.
"""

import hashlib
from pathlib import Path
from typing import Any, Protocol

import aiofiles
import aiofiles.os
import jinja2

from ..exceptions.domain import RenderError, StorageError
from ..types import RenderData
from ..utils.logger import logger

MED_CERT_TEMPLATE = """\
MEDICAL CERTIFICATE
{{ clinic_name }}{% if provider_number %} (provider {{ provider_number }}){% endif %}

Certificate number: {{ certificate_number }}
Verification code: {{ verification_code }}
Issued: {{ issued_at }}

This is to certify that {{ patient_name or "the patient" }}{% if patient_dob %}, born {{ patient_dob }},{% endif %}
was assessed by {{ reviewer_name or reviewer_id }} and is unfit for {{ recipient or "work" }}
{% if start_date %}from {{ start_date }}{% endif %}{% if end_date %} to {{ end_date }}{% endif %}.
{% if reason %}
Reason: {{ reason }}
{% endif %}
"""

BUILTIN_TEMPLATES = {"med_cert_v1": MED_CERT_TEMPLATE}


class DocumentRenderer(Protocol):
    def render(self, template_id: str, data: RenderData) -> bytes: ...


class BlobStorage(Protocol):
    async def put(self, path: str, content: bytes) -> str: ...

    async def get(self, path: str) -> bytes: ...


class Notifier(Protocol):
    async def send(self, recipient: str, template: str, data: RenderData) -> bool: ...


class RefundGateway(Protocol):
    async def refund(self, payment_reference: str, amount: int | None = None) -> bool: ...


class JinjaDocumentRenderer:
    """Renders documents from Jinja2 templates.

    Templates are looked up in ``template_dir`` first, then among the
    built-in templates. Undefined variables are errors.
    """

    def __init__(self, template_dir: str | Path | None = None):
        loaders: list[jinja2.BaseLoader] = []
        if template_dir is not None and Path(template_dir).is_dir():
            loaders.append(jinja2.FileSystemLoader(str(template_dir)))
        loaders.append(jinja2.DictLoader(BUILTIN_TEMPLATES))
        self.env = jinja2.Environment(
            loader=jinja2.ChoiceLoader(loaders),
            undefined=jinja2.StrictUndefined,
            autoescape=False,
            keep_trailing_newline=True,
        )

    def render(self, template_id: str, data: RenderData) -> bytes:
        try:
            template = self.env.get_template(template_id)
            return template.render(**data).encode("utf-8")
        except jinja2.TemplateError as e:
            raise RenderError(f"Cannot render template '{template_id}': {e}") from e


class LocalBlobStorage:
    """Stores blobs as files under ``root``; writes are atomic renames."""

    def __init__(self, root: str | Path):
        self.root = Path(root)

    def _resolve(self, path: str) -> Path:
        target = (self.root / path).resolve()
        if not target.is_relative_to(self.root.resolve()):
            raise StorageError(f"Path escapes storage root: {path}")
        return target

    async def put(self, path: str, content: bytes) -> str:
        target = self._resolve(path)
        tmp = target.with_suffix(target.suffix + ".tmp")
        try:
            await aiofiles.os.makedirs(target.parent, exist_ok=True)
            async with aiofiles.open(tmp, "wb") as f:
                await f.write(content)
            await aiofiles.os.replace(tmp, target)
        except OSError as e:
            raise StorageError(f"Cannot store {path}: {e}") from e
        logger.debug(f"Stored {len(content)} bytes at {target}")
        return str(target)

    async def get(self, path: str) -> bytes:
        target = self._resolve(path)
        try:
            async with aiofiles.open(target, "rb") as f:
                return await f.read()
        except OSError as e:
            raise StorageError(f"Cannot read {path}: {e}") from e


class LoggingNotifier:
    """Notifier that only logs; used when no messaging provider is configured."""

    async def send(self, recipient: str, template: str, data: RenderData) -> bool:
        logger.info(f"Notification '{template}' to {recipient}: {sorted(data)}")
        return True


class LoggingRefundGateway:
    """Refund gateway that only logs; used when no payment provider is configured."""

    async def refund(self, payment_reference: str, amount: int | None = None) -> bool:
        logger.info(
            f"Refund requested for payment {payment_reference}"
            f"{f' ({amount})' if amount is not None else ''}"
        )
        return True


def sha256_hex(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()


def template_snapshot(renderer: Any, template_id: str) -> dict[str, Any]:
    """Describe the template used for a document so it can be reproduced later."""
    snapshot: dict[str, Any] = {"template_id": template_id}
    env = getattr(renderer, "env", None)
    if isinstance(env, jinja2.Environment) and env.loader is not None:
        try:
            source, filename, _ = env.loader.get_source(env, template_id)
        except jinja2.TemplateNotFound:
            return snapshot
        snapshot["source_sha256"] = sha256_hex(source.encode("utf-8"))
        snapshot["source"] = filename or "builtin"
    return snapshot
