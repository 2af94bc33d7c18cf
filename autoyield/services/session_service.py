"""
Session authorization lifecycle.

Creates, validates and revokes the delegated signing authority the
agent uses. The session private key is generated and encrypted inside
``create_session``; only its public address leaves that function.
"""

import logging
import re
import time
from typing import Any, Callable, Optional

import rlp
from eth_account import Account
from eth_account.signers.local import LocalAccount
from eth_keys import keys
from eth_utils import keccak, to_checksum_address
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import Settings, get_settings
from ..core.errors import MissingApprovedVaults, SessionInvalid, SessionNotFound
from ..core.security import CryptoService, get_crypto_service
from ..db.repositories import SessionAuthorizationRepository, UserRepository
from ..models.session import (
    CallPolicy,
    Permission,
    SessionAuthorization,
    SessionCreated,
    SessionType,
    SessionValidation,
    SignedAuthorization,
)
from .execution_builder import (
    APPROVE_SELECTOR,
    DEPOSIT_SELECTOR,
    REDEEM_SELECTOR,
    TRANSFER_SELECTOR,
    WITHDRAW_SELECTOR,
)

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
EIP7702_MAGIC = b"\x05"

REASON_INVALID_TYPE = "Invalid session type"
REASON_INVALID_DATA = "Invalid session data"
REASON_EXPIRED = "Session expired"

_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")


# ==================== Validation ====================


def _field(session: Any, name: str) -> Any:
    if isinstance(session, dict):
        return session.get(name)
    return getattr(session, name, None)


def validate_session(
    session: Any,
    expected_type: Optional[SessionType] = None,
    now: Optional[float] = None,
) -> SessionValidation:
    """
    Check a stored session before use. Never raises.

    Checked in order: type discriminator, required fields, expiry.
    Accepts SessionAuthorization models, ORM rows and plain dicts.
    """
    try:
        raw_type = _field(session, "session_type") if session is not None else None
        try:
            session_type = SessionType(raw_type)
        except ValueError:
            return SessionValidation(valid=False, reason=REASON_INVALID_TYPE)
        if expected_type is not None and session_type != expected_type:
            return SessionValidation(valid=False, reason=REASON_INVALID_TYPE)

        for name in ("smart_account_address", "session_key_address"):
            value = _field(session, name)
            if not isinstance(value, str) or not _ADDRESS_RE.match(value):
                return SessionValidation(valid=False, reason=REASON_INVALID_DATA)

        encrypted = _field(session, "encrypted_private_key")
        expiry = _field(session, "expiry")
        if not isinstance(encrypted, str) or not encrypted:
            return SessionValidation(valid=False, reason=REASON_INVALID_DATA)
        if isinstance(expiry, bool) or not isinstance(expiry, int):
            return SessionValidation(valid=False, reason=REASON_INVALID_DATA)

        if session_type == SessionType.AGENT:
            vaults = _field(session, "approved_vaults")
            if vaults is not None and (
                not isinstance(vaults, list)
                or not all(isinstance(v, str) and _ADDRESS_RE.match(v) for v in vaults)
            ):
                return SessionValidation(valid=False, reason=REASON_INVALID_DATA)

        if expiry <= (now if now is not None else time.time()):
            return SessionValidation(valid=False, reason=REASON_EXPIRED)

        return SessionValidation(valid=True)
    except Exception as e:
        logger.warning(f"Session validation error: {type(e).__name__}")
        return SessionValidation(valid=False, reason=REASON_INVALID_DATA)


# ==================== Call policies ====================


def build_call_policy(
    session_type: SessionType,
    approved_vaults: Optional[list[str]],
    asset: str,
    allow_legacy_sudo: bool = False,
) -> CallPolicy:
    """
    The allow-list a session key is granted.

    agent:    redeem/deposit/withdraw on each approved vault, plus
              approve on the stable asset with spender in those vaults
    transfer: transfer on the stable asset, nothing else

    Raises:
        MissingApprovedVaults: agent session without vaults and the
            legacy unrestricted fallback disabled
    """
    asset = to_checksum_address(asset)

    if session_type == SessionType.TRANSFER:
        return CallPolicy(
            permissions=[Permission(target=asset, selector=TRANSFER_SELECTOR, name="transfer")]
        )

    if not approved_vaults:
        if allow_legacy_sudo:
            logger.error(
                "LEGACY SUDO: agent session without approved vaults granted an "
                "unrestricted call policy; user must re-register"
            )
            return CallPolicy(sudo=True)
        raise MissingApprovedVaults()

    vaults = [to_checksum_address(v) for v in approved_vaults]
    permissions = []
    for vault in vaults:
        permissions.extend(
            [
                Permission(target=vault, selector=REDEEM_SELECTOR, name="redeem"),
                Permission(target=vault, selector=DEPOSIT_SELECTOR, name="deposit"),
                Permission(target=vault, selector=WITHDRAW_SELECTOR, name="withdraw"),
            ]
        )
    permissions.append(
        Permission(
            target=asset,
            selector=APPROVE_SELECTOR,
            name="approve",
            allowed_spenders=tuple(vaults),
        )
    )
    return CallPolicy(permissions=permissions)


# ==================== EIP-7702 authorizations ====================


def authorization_digest(auth: SignedAuthorization) -> bytes:
    """keccak256(0x05 || rlp([chain_id, address, nonce]))"""
    address = bytes.fromhex(auth.address[2:])
    return keccak(EIP7702_MAGIC + rlp.encode([auth.chain_id, address, auth.nonce]))


def recover_authorization_signer(auth: SignedAuthorization) -> str:
    signature = keys.Signature(vrs=(auth.y_parity, int(auth.r, 16), int(auth.s, 16)))
    public_key = signature.recover_public_key_from_msg_hash(authorization_digest(auth))
    return public_key.to_checksum_address()


def authorization_to_dict(auth: SignedAuthorization) -> dict:
    return {
        "chainId": hex(auth.chain_id),
        "address": auth.address,
        "nonce": hex(auth.nonce),
        "yParity": hex(auth.y_parity),
        "r": auth.r,
        "s": auth.s,
    }


def decrypt_signer(session: SessionAuthorization, crypto: CryptoService) -> LocalAccount:
    """
    Decrypt a stored session key into a signer.

    Raises:
        SessionInvalid: ciphertext fails authentication or does not
            match the stored address
    """
    try:
        signer = Account.from_key(crypto.decrypt(session.encrypted_private_key))
    except ValueError as e:
        raise SessionInvalid("Session key could not be decrypted") from e
    if signer.address.lower() != session.session_key_address.lower():
        raise SessionInvalid("Session key does not match stored address")
    return signer


# ==================== Service ====================


class SessionService:
    """
    Usage:
        service = SessionService(db)
        created = await service.create_session(owner, SessionType.AGENT, approved_vaults=[...])
    """

    def __init__(
        self,
        db: AsyncSession,
        crypto: Optional[CryptoService] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.db = db
        self.crypto = crypto or get_crypto_service()
        self.settings = settings or get_settings()
        self.clock = clock
        self.users = UserRepository(db)
        self.sessions = SessionAuthorizationRepository(db)

    def _generate_key(self) -> tuple[str, str]:
        """New session key as (address, encrypted private key)"""
        account = Account.create()
        encrypted = self.crypto.encrypt(bytes(account.key).hex())
        return account.address, encrypted

    async def create_session(
        self,
        owner: str,
        session_type: SessionType,
        approved_vaults: Optional[list[str]] = None,
        delegation_proof: Optional[dict] = None,
    ) -> SessionCreated:
        """
        Generate, encrypt and store a fresh session key, superseding any
        previous session of the same type.

        Raises:
            MissingApprovedVaults: agent session without approved vaults
        """
        if session_type == SessionType.AGENT and not approved_vaults:
            raise MissingApprovedVaults()
        if session_type == SessionType.TRANSFER:
            approved_vaults = None

        vaults = [v.lower() for v in approved_vaults] if approved_vaults else None
        session_address, encrypted = self._generate_key()
        expiry = int(self.clock()) + self.settings.session_ttl_days * 86400

        user = await self.users.get_or_create(owner)
        user_id = user.id
        await self.db.commit()

        for attempt in range(2):
            try:
                await self.sessions.upsert(
                    user_id=user_id,
                    session_type=session_type.value,
                    smart_account_address=owner,
                    session_key_address=session_address,
                    encrypted_private_key=encrypted,
                    expiry=expiry,
                    approved_vaults=vaults,
                    delegation_proof=delegation_proof,
                )
                if session_type == SessionType.AGENT:
                    await self.users.set_agent_registered(
                        user_id, True, authorization_7702=delegation_proof
                    )
                await self.db.commit()
                break
            except IntegrityError:
                await self.db.rollback()
                if attempt == 1:
                    raise
                logger.info(f"Concurrent {session_type.value} session write for {owner}, retrying")

        logger.info(f"Created {session_type.value} session {session_address} for {owner}")
        return SessionCreated(session_address=session_address, expiry=expiry)

    async def get_session(
        self, owner: str, session_type: SessionType
    ) -> Optional[SessionAuthorization]:
        user = await self.users.get_by_wallet(owner)
        if user is None:
            return None
        row = await self.sessions.get(user.id, session_type.value)
        if row is None:
            return None
        return SessionAuthorization(
            session_type=row.session_type,
            smart_account_address=row.smart_account_address,
            session_key_address=row.session_key_address,
            encrypted_private_key=row.encrypted_private_key,
            expiry=row.expiry,
            created_at=int(row.created_at.timestamp()),
            approved_vaults=row.approved_vaults,
            delegation_proof=row.delegation_proof,
        )

    async def require_valid_session(
        self, owner: str, session_type: SessionType
    ) -> SessionAuthorization:
        """
        Raises:
            SessionNotFound: no stored session
            SessionInvalid: stored session fails validation
        """
        session = await self.get_session(owner, session_type)
        if session is None:
            raise SessionNotFound(f"No {session_type.value} session")
        validation = validate_session(session, session_type, now=self.clock())
        if not validation.valid:
            raise SessionInvalid(validation.reason)
        return session

    async def revoke_session(self, owner: str, session_type: SessionType) -> bool:
        """Soft revoke: delete the stored key. Returns False if none existed."""
        user = await self.users.get_by_wallet(owner)
        if user is None:
            return False
        removed = await self.sessions.delete(user.id, session_type.value)
        if session_type == SessionType.AGENT:
            await self.users.set_agent_registered(user.id, False)
        await self.db.commit()
        if removed:
            logger.info(f"Revoked {session_type.value} session for {owner}")
        return removed

    def _verify_owner_signed(self, owner: str, authorization: SignedAuthorization) -> None:
        if authorization.chain_id not in (0, self.settings.chain_id):
            raise SessionInvalid(f"Authorization chain {authorization.chain_id} not supported")
        try:
            signer = recover_authorization_signer(authorization)
        except Exception as e:
            raise SessionInvalid(f"Malformed authorization signature: {type(e).__name__}") from e
        if signer.lower() != owner.lower():
            raise SessionInvalid("Authorization not signed by account owner")

    def verify_delegation(self, owner: str, authorization: SignedAuthorization) -> None:
        """
        Raises:
            SessionInvalid: delegates to the zero address, wrong chain, or
                not signed by owner
        """
        if authorization.address.lower() == ZERO_ADDRESS:
            raise SessionInvalid("Delegation proof must not target the zero address")
        self._verify_owner_signed(owner, authorization)

    def verify_revocation(self, owner: str, authorization: SignedAuthorization) -> None:
        """
        Raises:
            SessionInvalid: not a revocation, wrong chain, or not signed by owner
        """
        if authorization.address.lower() != ZERO_ADDRESS:
            raise SessionInvalid("Revocation must delegate to the zero address")
        self._verify_owner_signed(owner, authorization)

    async def revoke_on_chain(
        self, owner: str, authorization: SignedAuthorization, relay
    ) -> str:
        """
        Hard revoke: relay an owner-signed delegation to the zero address,
        then drop the stored agent session.

        Returns:
            Relay bundle id of the revocation
        """
        self.verify_revocation(owner, authorization)
        bundle_id = await relay.send_authorization(
            to_checksum_address(owner), authorization_to_dict(authorization)
        )
        logger.warning(f"On-chain delegation revoked for {owner} (bundle {bundle_id})")
        await self.revoke_session(owner, SessionType.AGENT)
        return bundle_id

    def load_signer(self, session: SessionAuthorization) -> LocalAccount:
        return decrypt_signer(session, self.crypto)
