"""Per-actor RSA signing keys.

Key pairs are created lazily the first time an actor needs one (actor
document request or first signed delivery). Creation is an atomic upsert:
insert with conflict-do-nothing on the unique actor column, then re-read, so
concurrent first requests agree on a single stored pair.
"""

import asyncio
from dataclasses import dataclass, field

import structlog
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from sqlalchemy import select

from .errors import CryptoError, StorageError
from .models import KeyRecord
from .signatures import load_private_key
from .stores import SqlStore, dialect_insert

logger = structlog.get_logger()

KEY_SIZE = 2048


def generate_rsa_keypair() -> tuple[str, str]:
    """Generate RSA key pair for HTTP signatures.

    Returns:
        Tuple of (public_key_pem, private_key_pem)
    """
    private_key = rsa.generate_private_key(
        public_exponent=65537,
        key_size=KEY_SIZE,
    )

    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()

    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()

    return public_pem, private_pem


def key_id_for(actor_iri: str) -> str:
    """Key identifier published in the actor document."""
    return f"{actor_iri}#main-key"


@dataclass(frozen=True)
class KeyPair:
    """An actor's signing keys. The private half never leaves the engine."""
    actor: str
    public_key_pem: str
    private_key_pem: str = field(repr=False)

    @property
    def key_id(self) -> str:
        return key_id_for(self.actor)

    def load_private_key(self) -> rsa.RSAPrivateKey:
        try:
            return load_private_key(self.private_key_pem)
        except CryptoError as e:
            raise CryptoError(f"Key pair for {self.actor}: {e}") from e


class KeyStore(SqlStore):
    """Owns the signing key pairs of local actors."""

    async def get(self, actor_iri: str) -> KeyPair | None:
        async with self.transaction() as session:
            result = await session.execute(
                select(KeyRecord).where(KeyRecord.actor == actor_iri)
            )
            record = result.scalar_one_or_none()
        return _to_keypair(record) if record else None

    async def get_or_create(self, actor_iri: str) -> KeyPair:
        """Return the actor's key pair, generating and storing one on first use.

        Raises:
            CryptoError: If key generation fails
            StorageError: If the pair cannot be persisted or read back
        """
        existing = await self.get(actor_iri)
        if existing:
            return existing

        try:
            # Generation blocks; keep it off the event loop
            public_pem, private_pem = await asyncio.to_thread(generate_rsa_keypair)
        except (ValueError, TypeError) as e:
            raise CryptoError(f"Key generation failed for {actor_iri}: {e}") from e

        async with self.transaction() as session:
            stmt = dialect_insert(session, KeyRecord).values(
                actor=actor_iri,
                public_key_pem=public_pem,
                private_key_pem=private_pem,
            ).on_conflict_do_nothing(index_elements=[KeyRecord.actor])
            result = await session.execute(stmt)
            inserted = result.rowcount > 0

        stored = await self.get(actor_iri)
        if stored is None:
            raise StorageError(f"Key pair for {actor_iri} vanished after insert")

        if inserted:
            logger.info("Created key pair", actor=actor_iri)
        else:
            logger.info("Concurrent key creation resolved to stored pair", actor=actor_iri)
        return stored


def _to_keypair(record: KeyRecord) -> KeyPair:
    return KeyPair(
        actor=record.actor,
        public_key_pem=record.public_key_pem,
        private_key_pem=record.private_key_pem,
    )
