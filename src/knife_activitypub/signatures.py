"""HTTP Signatures (draft-cavage) for ActivityPub requests.

Outbound deliveries sign (request-target), host, date and digest with the
local actor's RSA key using rsa-sha256.
"""

import base64
import hashlib
import re
from email.utils import formatdate
from urllib.parse import urlparse

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from .errors import CryptoError

SIGNED_HEADERS = ["(request-target)", "host", "date", "digest"]

_SIGNATURE_PARAM = re.compile(r'(\w+)="([^"]*)"')


def compute_digest(body: bytes) -> str:
    """Digest header value for a body: "SHA-256=" plus the base64 hash."""
    encoded = base64.b64encode(hashlib.sha256(body).digest()).decode()
    return f"SHA-256={encoded}"


def create_signature_string(
    method: str,
    path: str,
    headers: dict[str, str],
    signed_headers: list[str],
) -> str:
    """Assemble the newline-joined "name: value" lines that get signed.

    The pseudo-header (request-target) becomes the lowercased method and
    path; every other name is looked up in headers, which must be keyed by
    lowercase name. A header that is absent signs as an empty value.
    """
    lines = [
        f"(request-target): {method.lower()} {path}"
        if name == "(request-target)"
        else f"{name}: {headers.get(name, '')}"
        for name in signed_headers
    ]
    return "\n".join(lines)


def load_private_key(private_key_pem: str) -> rsa.RSAPrivateKey:
    """Decode an unencrypted PEM private key.

    Raises:
        CryptoError: If the PEM is not an RSA private key
    """
    try:
        key = serialization.load_pem_private_key(
            private_key_pem.encode(),
            password=None,
        )
    except (ValueError, TypeError) as e:
        raise CryptoError(f"Cannot decode private key: {e}") from e
    if not isinstance(key, rsa.RSAPrivateKey):
        raise CryptoError("Private key is not RSA")
    return key


def request_path(url: str) -> str:
    """Path plus query string, as used in (request-target)."""
    parsed = urlparse(url)
    path = parsed.path or "/"
    if parsed.query:
        path += f"?{parsed.query}"
    return path


def sign_request(
    private_key_pem: str,
    key_id: str,
    method: str,
    url: str,
    headers: dict[str, str],
    body: bytes,
) -> str:
    """Create HTTP Signature header for request.

    Args:
        private_key_pem: Signing actor's RSA private key in PEM format
        key_id: Public key ID (actor#main-key)
        method: HTTP method
        url: Full URL
        headers: Request headers (mutated to add Date, Digest, Host)
        body: Request body

    Returns:
        Signature header value

    Raises:
        CryptoError: If signing fails
    """
    private_key = load_private_key(private_key_pem)

    if "Date" not in headers:
        headers["Date"] = formatdate(usegmt=True)
    headers["Digest"] = compute_digest(body)
    headers["Host"] = urlparse(url).netloc

    sig_string = create_signature_string(
        method=method,
        path=request_path(url),
        headers={k.lower(): v for k, v in headers.items()},
        signed_headers=SIGNED_HEADERS,
    )

    try:
        signature = private_key.sign(
            sig_string.encode(),
            padding.PKCS1v15(),
            hashes.SHA256(),
        )
    except (ValueError, TypeError) as e:
        raise CryptoError(f"Signing failed: {e}") from e

    sig_b64 = base64.b64encode(signature).decode()

    return (
        f'keyId="{key_id}",'
        f'algorithm="rsa-sha256",'
        f'headers="{" ".join(SIGNED_HEADERS)}",'
        f'signature="{sig_b64}"'
    )


def parse_signature_header(value: str) -> dict[str, str]:
    """Split a Signature header into its parameters."""
    return dict(_SIGNATURE_PARAM.findall(value))


def verify_request(
    public_key_pem: str,
    method: str,
    path: str,
    headers: dict[str, str],
    body: bytes | None = None,
) -> bool:
    """Verify a signed request.

    Args:
        public_key_pem: Signer's public key (SPKI PEM)
        method: HTTP method
        path: Request path (with query string)
        headers: Request headers, any case
        body: If given, must match the Digest header

    Returns:
        True if the signature (and digest, when checked) is valid
    """
    lowered = {k.lower(): v for k, v in headers.items()}
    params = parse_signature_header(lowered.get("signature", ""))
    if not params.get("signature") or params.get("algorithm", "rsa-sha256") != "rsa-sha256":
        return False

    if body is not None and lowered.get("digest") != compute_digest(body):
        return False

    signed_headers = params.get("headers", "date").split()
    sig_string = create_signature_string(method, path, lowered, signed_headers)

    try:
        public_key = serialization.load_pem_public_key(public_key_pem.encode())
        signature = base64.b64decode(params["signature"])
    except ValueError:
        return False
    if not isinstance(public_key, rsa.RSAPublicKey):
        return False

    try:
        public_key.verify(signature, sig_string.encode(), padding.PKCS1v15(), hashes.SHA256())
    except InvalidSignature:
        return False
    return True
