"""
DKIM public key lookup

The key of a signature lives in the DNS TXT record ``<s>._domainkey.<d>``.
"""
import base64
import logging
from dataclasses import dataclass, field
from typing import Optional

import dkim
import dns.exception
import dns.resolver
import nacl.exceptions
import nacl.signing
from dkim.crypto import parse_public_key, UnparsableKeyError
from dkim.util import parse_tag_value, InvalidTagValueList

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 5.0

KEY_TYPES = (b'rsa', b'ed25519')


class KeyLookupError(dkim.DKIMException):
    """The DNS query for a key record failed (not the same as a missing record)."""


@dataclass
class KeyRecord:
    """ A parsed DKIM key record

    For ``rsa`` keys ``modulus`` and ``exponent`` are set, for ``ed25519``
    keys ``verify_key`` is a ``nacl.signing.VerifyKey``. ``raw`` is the
    decoded ``p=`` value in both cases.
    """

    key_type: bytes
    raw: bytes = field(repr=False)
    modulus: Optional[int] = field(default=None, repr=False)
    exponent: Optional[int] = field(default=None, repr=False)
    verify_key: Optional[nacl.signing.VerifyKey] = field(default=None, repr=False)

    @property
    def key_size(self) -> int:
        if self.key_type == b'rsa':
            return dkim.bitsize(self.modulus)
        return 256


def get_dns_txt(name, nameservers=None, timeout=DEFAULT_TIMEOUT):
    """ Fetch the DNS TXT record of name

    @param name: str or bytes, the DNS name to query
    @param nameservers: list of resolver addresses, system resolver when None
    @param timeout: overall lifetime of the query in seconds
    @return: bytes
        the record value with its character strings joined, or None when
        the name has no TXT record
    """
    if isinstance(name, bytes):
        name = name.decode('ascii')
    resolver = dns.resolver.Resolver(configure=not nameservers)
    if nameservers:
        resolver.nameservers = list(nameservers)
    try:
        answer = resolver.resolve(name, 'TXT', lifetime=timeout)
    except (dns.resolver.NXDOMAIN, dns.resolver.NoAnswer):
        logger.debug("no TXT record for %s", name)
        return None
    except dns.exception.DNSException as e:
        raise KeyLookupError(f"DNS lookup of {name} failed: {e}")
    for rdata in answer:
        return b''.join(rdata.strings)
    return None


def _ascii(record) -> bytes:
    if isinstance(record, str):
        try:
            return record.encode('ascii')
        except UnicodeEncodeError as e:
            raise dkim.KeyFormatError("key record is not ASCII: %s" % e)
    return record


def make_dnsfunc(nameservers=None, timeout=DEFAULT_TIMEOUT):
    """Return a ``name -> bytes`` lookup bound to the given resolver settings."""
    def dnsfunc(name):
        return get_dns_txt(name, nameservers=nameservers, timeout=timeout)
    return dnsfunc


def static_dnsfunc(record):
    """ Lookup that always answers with record

    Used to verify a message offline with a key record obtained elsewhere.
    """
    record = _ascii(record).strip()

    def dnsfunc(name):
        logger.debug("answering %r from static key record", name)
        return record
    return dnsfunc


def parse_key_record(txt) -> KeyRecord:
    """ Parse a DKIM key record

    @param txt: bytes, e.g. b'v=DKIM1; k=rsa; p=MIIBIjANBg...'
    @return: KeyRecord
    @raise dkim.KeyFormatError: unsupported or malformed record
    """
    txt = _ascii(txt)
    try:
        tags = parse_tag_value(txt)
    except InvalidTagValueList as e:
        raise dkim.KeyFormatError(e)

    # Version not required in key record: RFC 6376 3.6.1
    if tags.get(b'v', b'DKIM1') != b'DKIM1':
        raise dkim.KeyFormatError("DKIM bad version: %r" % tags[b'v'])

    key_type = tags.get(b'k', b'rsa').lower()
    if key_type not in KEY_TYPES:
        raise dkim.KeyFormatError("unsupported key type: %r" % key_type)

    if b'p' not in tags:
        raise dkim.KeyFormatError("incomplete public key: %r" % txt)
    p = b''.join(tags[b'p'].split())
    if not p:
        raise dkim.KeyFormatError("public key has been revoked")
    try:
        raw = base64.b64decode(p, validate=True)
    except ValueError as e:
        raise dkim.KeyFormatError("p= value is not valid base64 (%r): %s" % (p, e))

    if key_type == b'ed25519':
        try:
            verify_key = nacl.signing.VerifyKey(raw)
        except (nacl.exceptions.ValueError, nacl.exceptions.TypeError) as e:
            raise dkim.KeyFormatError("could not parse ed25519 public key (%r): %s" % (p, e))
        return KeyRecord(key_type, raw, verify_key=verify_key)

    try:
        pk = parse_public_key(raw)
        return KeyRecord(key_type, raw, modulus=pk['modulus'], exponent=pk['publicExponent'])
    except KeyError:
        raise dkim.KeyFormatError("incomplete RSA public key: %r" % p)
    except (TypeError, UnparsableKeyError) as e:
        raise dkim.KeyFormatError("could not parse RSA public key (%r): %s" % (p, e))
