"""
Vault Service
Stores seller evidence artifacts (hash + storage pointer or encrypted inline
payload) and keeps an append-only, hash-chained access log per transaction.
"""

import hashlib
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy.orm import Session

from config import Config
from models import (
    ActorRole, AssetKind, RiftTransaction, ScanStatus, VaultAsset, VaultEvent, VaultEventAction,
)
from services.auto_release_scheduler import AutoReleaseScheduler
from services.external_clients import ObjectStorage
from utils.atomic_transactions import atomic_transaction, locked_rift
from utils.authorization import Actor, require_actor
from utils.datetime_helpers import get_naive_utc_now
from utils.exceptions import NotFoundError, ValidationError, RiftError
from utils.external_call import guarded_call

logger = logging.getLogger(__name__)

TEXT_KINDS = (
    AssetKind.LICENSE_KEY.value,
    AssetKind.TRACKING_NUMBER.value,
    AssetKind.URL.value,
    AssetKind.FREE_TEXT.value,
)
# Stored encrypted, never as plain text
SECRET_KINDS = (AssetKind.LICENSE_KEY.value, AssetKind.FREE_TEXT.value)

BUYER_ACCESS_ACTIONS = (
    VaultEventAction.OPENED.value,
    VaultEventAction.REVEALED.value,
    VaultEventAction.DOWNLOADED.value,
    VaultEventAction.VIEWED_TRACKING.value,
)


@dataclass
class ProofSubmission:
    """One artifact as handed over by the seller"""

    asset_kind: AssetKind
    content: Optional[bytes] = None
    text_value: Optional[str] = None
    file_name: Optional[str] = None
    mime_type: Optional[str] = None

    @property
    def is_file(self) -> bool:
        return self.content is not None


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def canonical_text(value: str) -> str:
    """Case and whitespace insensitive form used for near-duplicate matching"""
    return " ".join(value.lower().split())


def compute_log_hash(fields: dict, prev_log_hash: Optional[str]) -> str:
    payload = {**fields, "prev_log_hash": prev_log_hash}
    encoded = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return sha256_hex(encoded.encode("utf-8"))


def _event_fields(event: VaultEvent) -> dict:
    return {
        "event_id": event.event_id,
        "rift_id": event.rift_id,
        "asset_id": event.asset_id,
        "actor_id": event.actor_id,
        "actor_role": event.actor_role,
        "action": event.action,
        "asset_hash": event.asset_hash,
        "client_fingerprint": event.client_fingerprint,
        "created_at": event.created_at.isoformat(),
    }


class VaultService:
    """Artifact storage plus the tamper-evident access log"""

    def __init__(self, storage: ObjectStorage, encryption_key: Optional[str] = None):
        self.storage = storage
        key = encryption_key or Config.VAULT_ENCRYPTION_KEY
        if not key:
            logger.warning("⚠️ VAULT_ENCRYPTION_KEY not set, generating an ephemeral key for this process")
            key = Fernet.generate_key().decode()
        self._fernet = Fernet(key.encode() if isinstance(key, str) else key)

    # ------------------------------------------------------------------ uploads

    def _validate(self, submission: ProofSubmission) -> None:
        kind = submission.asset_kind.value
        if kind in TEXT_KINDS:
            if not submission.text_value or not submission.text_value.strip():
                raise ValidationError(f"{kind} proof requires a value")
            return
        if kind == AssetKind.TICKET_PROOF.value and not submission.is_file:
            if not submission.text_value or not submission.text_value.strip():
                raise ValidationError("ticket proof requires a file or a transfer confirmation")
            return
        if not submission.content:
            raise ValidationError("File proof is empty")
        if len(submission.content) > Config.MAX_PROOF_FILE_BYTES:
            raise ValidationError("File proof exceeds the maximum upload size")

    def store_artifact(self, session: Session, rift: RiftTransaction, actor: Actor,
                       submission: ProofSubmission) -> VaultAsset:
        """
        Hash and persist a seller artifact, append an UPLOADED event.

        Runs inside the caller's atomic unit. Storage failures raise
        ExternalServiceUnavailable and nothing is written.
        """
        require_actor(actor, rift, ActorRole.SELLER, operation="upload proof")
        self._validate(submission)

        asset = VaultAsset(
            rift_id=rift.id,
            uploader_id=actor.user_id,
            asset_kind=submission.asset_kind.value,
            file_name=submission.file_name,
            mime_type=submission.mime_type,
            scan_status=ScanStatus.PENDING.value,
        )

        if submission.is_file:
            data = submission.content
            asset.content_sha256 = sha256_hex(data)
            if (submission.mime_type or "").startswith("text/"):
                asset.canonical_sha256 = sha256_hex(
                    canonical_text(data.decode("utf-8", errors="replace")).encode("utf-8")
                )
            else:
                asset.canonical_sha256 = asset.content_sha256
            asset.size_bytes = len(data)
            asset.storage_pointer = guarded_call(
                "object_storage", self.storage.store, data, submission.mime_type
            )
        else:
            value = submission.text_value.strip()
            asset.content_sha256 = sha256_hex(value.encode("utf-8"))
            asset.canonical_sha256 = sha256_hex(canonical_text(value).encode("utf-8"))
            asset.size_bytes = len(value)
            if submission.asset_kind.value in SECRET_KINDS:
                asset.encrypted_payload = self._fernet.encrypt(value.encode("utf-8")).decode("ascii")
            else:
                asset.text_value = value

        session.add(asset)
        session.flush()
        self._append_event(session, rift.id, asset, actor, VaultEventAction.UPLOADED.value, None)
        logger.info(
            f"🔐 VAULT_UPLOAD: rift #{rift.rift_number} asset {asset.id} kind={asset.asset_kind} "
            f"sha256={asset.content_sha256[:12]}…"
        )
        return asset

    def decrypt_payload(self, asset: VaultAsset) -> Optional[str]:
        if not asset.encrypted_payload:
            return asset.text_value
        try:
            return self._fernet.decrypt(asset.encrypted_payload.encode("ascii")).decode("utf-8")
        except InvalidToken as e:
            logger.error(f"❌ VAULT_DECRYPT_FAILED: asset {asset.id}")
            raise RiftError("Vault payload could not be decrypted") from e

    # ------------------------------------------------------------------ access log

    def _append_event(self, session: Session, rift_id: str, asset: Optional[VaultAsset], actor: Actor,
                      action: str, fingerprint: Optional[str], at: Optional[datetime] = None) -> VaultEvent:
        previous = (
            session.query(VaultEvent.log_hash)
            .filter(VaultEvent.rift_id == rift_id)
            .order_by(VaultEvent.id.desc())
            .first()
        )
        event = VaultEvent(
            event_id=str(uuid.uuid4()),
            rift_id=rift_id,
            asset_id=asset.id if asset else None,
            actor_id=actor.user_id,
            actor_role=actor.role.value,
            action=action,
            asset_hash=asset.content_sha256 if asset else None,
            client_fingerprint=fingerprint,
            created_at=at or get_naive_utc_now(),
        )
        event.prev_log_hash = previous[0] if previous else None
        event.log_hash = compute_log_hash(_event_fields(event), event.prev_log_hash)
        session.add(event)
        session.flush()
        return event

    def record_access(self, session: Session, rift_id: str, actor: Actor, asset_id: str,
                      action: VaultEventAction, fingerprint: Optional[str] = None,
                      at: Optional[datetime] = None) -> VaultEvent:
        """
        Log a read of an artifact. The buyer's first access of any artifact
        restarts the auto-release clock from that moment (same atomic unit).
        """
        if action == VaultEventAction.UPLOADED:
            raise ValidationError("Uploads are logged by store_artifact")

        accessed_at = at or get_naive_utc_now()
        with atomic_transaction(session):
            rift = locked_rift(session, rift_id)
            require_actor(actor, rift, ActorRole.BUYER, ActorRole.SELLER, ActorRole.ADMIN,
                          operation=f"{action.value} proof")
            asset = session.get(VaultAsset, asset_id)
            if asset is None or asset.rift_id != rift.id:
                raise NotFoundError("Artifact not found")

            event = self._append_event(session, rift.id, asset, actor, action.value, fingerprint, accessed_at)

            if actor.role == ActorRole.BUYER and action.value in BUYER_ACCESS_ACTIONS:
                AutoReleaseScheduler.recompute_on_first_access(session, rift, accessed_at)

        logger.info(f"👁️ VAULT_ACCESS: rift #{rift.rift_number} {actor.role.value} {action.value} asset {asset_id}")
        return event

    def reveal_payload(self, session: Session, rift_id: str, actor: Actor, asset_id: str,
                       fingerprint: Optional[str] = None) -> Optional[str]:
        """Decrypt an inline secret for the buyer (or admin) and log the reveal"""
        with atomic_transaction(session):
            rift = locked_rift(session, rift_id)
            require_actor(actor, rift, ActorRole.BUYER, ActorRole.ADMIN, operation="reveal proof")
            asset = session.get(VaultAsset, asset_id)
            if asset is None or asset.rift_id != rift.id:
                raise NotFoundError("Artifact not found")
            self.record_access(session, rift_id, actor, asset_id, VaultEventAction.REVEALED, fingerprint)
            return self.decrypt_payload(asset)

    @staticmethod
    def verify_event_chain(session: Session, rift_id: str) -> bool:
        """Recompute every link; False if any event was altered, removed or reordered"""
        events = (
            session.query(VaultEvent)
            .filter(VaultEvent.rift_id == rift_id)
            .order_by(VaultEvent.id)
            .all()
        )
        previous_hash = None
        for event in events:
            if event.prev_log_hash != previous_hash:
                logger.error(f"🚨 VAULT_CHAIN_BROKEN: rift {rift_id} event {event.event_id} prev-hash mismatch")
                return False
            if compute_log_hash(_event_fields(event), event.prev_log_hash) != event.log_hash:
                logger.error(f"🚨 VAULT_CHAIN_BROKEN: rift {rift_id} event {event.event_id} content mismatch")
                return False
            previous_hash = event.log_hash
        return True
