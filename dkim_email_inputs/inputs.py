"""
Email inputs: the JSON handed to the downstream program

    {
        "signature": "<base64 of the signature as a big integer>",
        "publicKey": "<base64 of the RSA modulus as a big integer>",
        "headers": "<canonicalized signed headers>",
        "body": "<canonicalized body>",
        "bodyHash": "<bh= value>",
        ...
    }

Ed25519 keys and signatures are not integers and are written as raw bytes.
"""
import base64
import hashlib
import json
import logging
import os
from dataclasses import dataclass
from typing import Optional

import nacl.exceptions
import nacl.signing
from Crypto.Hash import SHA1, SHA256
from Crypto.PublicKey import RSA
from Crypto.Signature import pkcs1_15
from Crypto.Util.number import bytes_to_long, long_to_bytes

from dkim_email_inputs.verifier import DKIMResult, DKIMVerifier

logger = logging.getLogger(__name__)

DEFAULT_OUTPUT = 'email-inputs.json'

# only the modulus travels in the JSON
RSA_EXPONENT = 65537

DEFAULT_ALGORITHM = 'rsa-sha256'

REQUIRED_KEYS = ('signature', 'publicKey', 'headers', 'body', 'bodyHash')

PYCRYPTO_HASHES = {
    'rsa-sha1': SHA1,
    'rsa-sha256': SHA256,
}

BODY_HASHES = {
    'rsa-sha1': hashlib.sha1,
    'rsa-sha256': hashlib.sha256,
    'ed25519-sha256': hashlib.sha256,
}


class InputsError(Exception):
    pass


class InputsFormatError(InputsError):
    """The JSON is not a valid email inputs document."""


def bigint_to_base64(value: int) -> str:
    """ Base64 of the big-endian bytes of value

    >>> bigint_to_base64(65537)
    'AQAB'
    >>> bigint_to_base64(0)
    'AA=='
    """
    return base64.b64encode(long_to_bytes(value)).decode('ascii')


def base64_to_bigint(text: str) -> int:
    return bytes_to_long(base64.b64decode(text))


def _decode(data: bytes, what: str) -> str:
    try:
        return data.decode('utf-8')
    except UnicodeDecodeError:
        logger.warning("%s is not valid UTF-8, undecodable bytes replaced", what)
        return data.decode('utf-8', errors='replace')


@dataclass
class EmailInputs:
    signature: str
    public_key: str
    headers: str
    body: str
    body_hash: str
    signing_domain: Optional[str] = None
    selector: Optional[str] = None
    algorithm: str = DEFAULT_ALGORITHM
    key_size: Optional[int] = None

    @classmethod
    def from_result(cls, result: DKIMResult) -> 'EmailInputs':
        key = result.public_key
        if key.key_type == b'ed25519':
            signature = base64.b64encode(result.signature).decode('ascii')
            public_key = base64.b64encode(key.raw).decode('ascii')
        else:
            signature = bigint_to_base64(bytes_to_long(result.signature))
            public_key = bigint_to_base64(key.modulus)
        return cls(
            signature=signature,
            public_key=public_key,
            headers=_decode(result.headers, 'headers'),
            body=_decode(result.body, 'body'),
            body_hash=result.body_hash,
            signing_domain=result.domain.decode('ascii'),
            selector=result.selector.decode('ascii'),
            algorithm=result.algorithm.decode('ascii'),
            key_size=key.key_size,
        )

    def to_dict(self):
        d = {
            'signature': self.signature,
            'publicKey': self.public_key,
            'headers': self.headers,
            'body': self.body,
            'bodyHash': self.body_hash,
            'algorithm': self.algorithm,
        }
        if self.signing_domain is not None:
            d['signingDomain'] = self.signing_domain
        if self.selector is not None:
            d['selector'] = self.selector
        if self.key_size is not None:
            d['keySize'] = self.key_size
        return d

    @classmethod
    def from_dict(cls, d) -> 'EmailInputs':
        if not isinstance(d, dict):
            raise InputsFormatError("email inputs must be a JSON object")
        missing = [k for k in REQUIRED_KEYS if k not in d]
        if missing:
            raise InputsFormatError("missing keys: %s" % ', '.join(missing))
        for k in REQUIRED_KEYS:
            if not isinstance(d[k], str):
                raise InputsFormatError("%s must be a string" % k)
        if not isinstance(d.get('algorithm', DEFAULT_ALGORITHM), str):
            raise InputsFormatError("algorithm must be a string")
        return cls(
            signature=d['signature'],
            public_key=d['publicKey'],
            headers=d['headers'],
            body=d['body'],
            body_hash=d['bodyHash'],
            signing_domain=d.get('signingDomain'),
            selector=d.get('selector'),
            algorithm=d.get('algorithm', DEFAULT_ALGORITHM),
            key_size=d.get('keySize'),
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


def generate_email_inputs(message: bytes, dnsfunc=None, domain=None, index=None,
                          check_expiry=False, minkey=1024) -> EmailInputs:
    """ Verify a DKIM signature of message and collect the email inputs

    @param message: bytes, the raw email
    @param dnsfunc: TXT lookup, see dkim_email_inputs.keys
    @param domain: verify the signature of this d= domain
    @param index: verify the signature at this position
    @return: EmailInputs
    @raise dkim.DKIMException: the signature could not be verified
    """
    verifier = DKIMVerifier(message, dnsfunc=dnsfunc, minkey=minkey)
    idx = verifier.select(domain=domain, index=index)
    logger.info("== verifying DKIM-Signature %d of %d ==", idx + 1, len(verifier.signatures()))
    result = verifier.verify(idx, check_expiry=check_expiry)
    return EmailInputs.from_result(result)


def remove_stale(path=DEFAULT_OUTPUT):
    """Delete the output of an earlier run so a failed run leaves no file behind."""
    if os.path.exists(path):
        logger.debug("removing stale %s", path)
        os.remove(path)


def write_inputs(inputs: EmailInputs, path=DEFAULT_OUTPUT):
    remove_stale(path)
    with open(path, 'w', encoding='utf-8') as f:
        f.write(inputs.to_json())
    logger.info("== email inputs written to %s ==", path)


def load_inputs(path) -> EmailInputs:
    try:
        with open(path, 'r', encoding='utf-8') as f:
            d = json.load(f)
    except ValueError as e:
        # JSONDecodeError and UnicodeDecodeError
        raise InputsFormatError("%s is not valid JSON: %s" % (path, e))
    return EmailInputs.from_dict(d)


def _b64(text, what):
    try:
        return base64.b64decode(text, validate=True)
    except ValueError as e:
        raise InputsFormatError("%s is not valid base64: %s" % (what, e))


def check_inputs(inputs: EmailInputs) -> bool:
    """ Re-check email inputs using nothing but the JSON

    The body must hash to bodyHash and the signature must verify over
    headers with publicKey.
    """
    algorithm = inputs.algorithm
    if not isinstance(algorithm, str) or algorithm not in BODY_HASHES:
        raise InputsFormatError("unknown algorithm: %s" % algorithm)

    body_hash = base64.b64encode(BODY_HASHES[algorithm](inputs.body.encode('utf-8')).digest()).decode('ascii')
    if body_hash != inputs.body_hash:
        logger.error("== body hash mismatch (got %s, expected %s) ==", body_hash, inputs.body_hash)
        return False

    headers = inputs.headers.encode('utf-8')
    signature = _b64(inputs.signature, 'signature')
    public_key = _b64(inputs.public_key, 'publicKey')

    if algorithm == 'ed25519-sha256':
        try:
            nacl.signing.VerifyKey(public_key).verify(hashlib.sha256(headers).digest(), signature)
        except (nacl.exceptions.BadSignatureError, nacl.exceptions.ValueError):
            logger.error("== signature verification failed ==")
            return False
        return True

    modulus = bytes_to_long(public_key)
    try:
        key = RSA.construct((modulus, RSA_EXPONENT))
    except ValueError as e:
        raise InputsFormatError("publicKey is not a usable RSA modulus: %s" % e)
    # the integer encoding drops leading zero bytes, pkcs1_15 wants them back
    modlen = (key.size_in_bits() + 7) // 8
    signature = long_to_bytes(bytes_to_long(signature), modlen)
    try:
        pkcs1_15.new(key).verify(PYCRYPTO_HASHES[algorithm].new(headers), signature)
    except ValueError:
        logger.error("== signature verification failed ==")
        return False
    return True
