"""
Verify a DKIM signature by hand and keep the pieces

dkimpy's ``DKIM.verify`` only answers yes or no. The steps are redone here
with dkimpy's building blocks so the canonicalized headers, the
canonicalized body and the raw signature can be handed to another program.
"""
import base64
import hashlib
import logging
import re
import time
from dataclasses import dataclass, field

import dkim
import nacl.exceptions
from dkim import select_headers, RE_BTAG
from dkim.canonicalization import CanonicalizationPolicy, InvalidCanonicalizationPolicyError
from dkim.crypto import EMSA_PKCS1_v1_5_encode, DigestTooLargeError, int2str, str2int
from dkim.util import parse_tag_value, InvalidTagValueList

from dkim_email_inputs.keys import KeyRecord, make_dnsfunc, parse_key_record

HASH_ALGORITHMS = {
    b'rsa-sha1': hashlib.sha1,
    b'rsa-sha256': hashlib.sha256,
    b'ed25519-sha256': hashlib.sha256,
}

MANDATORY_FIELDS = (b'v', b'a', b'b', b'bh', b'd', b'h', b's')

# allowed clock skew for t= and x=, 10H
SLOP = 3600 * 10

RE_BASE64 = re.compile(br"[\s0-9A-Za-z+/]+[\s=]*$")


def timestamp_format(timestamp: int):
    return time.strftime('%Y-%m-%d %H:%M:%S', time.localtime(timestamp))


def strip_fws(value: bytes) -> bytes:
    return re.sub(br"\s+", b"", value)


def validate_signature_fields(sig, mandatory_fields=MANDATORY_FIELDS):
    """Validate DKIM-Signature fields.
    Basic checks for presence and correct formatting of the tags.
    Raises a ValidationError if checks fail, otherwise returns None.
    @param sig: A dict mapping field keys to values.
    @param mandatory_fields: A list of non-optional fields.
    """
    for field in mandatory_fields:
        if field not in sig:
            raise dkim.ValidationError("missing %s=" % field.decode())

    if sig[b'v'] != b'1':
        raise dkim.ValidationError("v= value is not 1 (%s)" % sig[b'v'])
    if sig[b'a'] not in HASH_ALGORITHMS:
        raise dkim.ValidationError("unknown signature algorithm: %s" % sig[b'a'])

    for tag in (b'b', b'bh'):
        value = sig[tag]
        if RE_BASE64.match(value) is None or len(strip_fws(value)) % 4 != 0:
            raise dkim.ValidationError("%s= value is not valid base64 (%s)" % (tag.decode(), value))

    include_headers = [x.lower() for x in re.split(br"\s*:\s*", sig[b'h'])]
    if b'from' not in include_headers:
        raise dkim.ValidationError("h= value does not include from (%s)" % sig[b'h'])

    if b'i' in sig:
        domain = sig[b'd'].lower()
        identity = sig[b'i'].lower()
        if not (identity.endswith(b'@' + domain) or identity.endswith(b'.' + domain)):
            raise dkim.ValidationError("i= domain is not a subdomain of d= (i=%s d=%s)" % (sig[b'i'], sig[b'd']))

    for tag in (b'l', b't', b'x'):
        if tag in sig and re.match(br"\d+$", sig[tag]) is None:
            raise dkim.ValidationError("%s= value is not a decimal integer (%s)" % (tag.decode(), sig[tag]))


def check_times(sig, now=None, slop=SLOP):
    """ Reject signatures from the future and expired signatures

    @param sig: dict of the signature tags
    @param now: unix time to check against, current time when None
    @param slop: seconds of tolerated clock skew
    """
    if now is None:
        now = int(time.time())
    sign_time = None
    if b't' in sig:
        sign_time = int(sig[b't'])
        if now + slop < sign_time:
            raise dkim.ValidationError(
                "t= value is in the future (now %s, signed %s)" % (timestamp_format(now), timestamp_format(sign_time)))
    if b'x' in sig:
        expire_time = int(sig[b'x'])
        if now - slop > expire_time:
            raise dkim.ValidationError("x= value is past (%s)" % timestamp_format(expire_time))
        if sign_time is not None and expire_time < sign_time:
            raise dkim.ValidationError(
                "x= value is less than t= value (x=%s t=%s)" % (expire_time, sign_time))


@dataclass
class DKIMResult:
    """Everything captured while verifying one signature."""

    domain: bytes
    selector: bytes
    algorithm: bytes
    signature: bytes = field(repr=False)
    public_key: KeyRecord
    headers: bytes = field(repr=False)
    body: bytes = field(repr=False)
    body_hash: str


class DKIMVerifier:
    def __init__(self, message: bytes, dnsfunc=None, logger=None, minkey=1024):
        """
        @param message: the raw RFC822 message, CRLF or LF line endings
        @param dnsfunc: callable returning the TXT record of a DNS name
        @param logger: logging.Logger, module logger when None
        @param minkey: smallest accepted RSA key in bits
        """
        if not message:
            raise dkim.MessageFormatError("empty message")
        self.headers, self.body = dkim.rfc822_parse(message)
        self.dnsfunc = dnsfunc or make_dnsfunc()
        self.logger = logger or logging.getLogger(__name__)
        self.minkey = minkey

    def signatures(self):
        """All DKIM-Signature headers as (name, value) pairs, topmost first."""
        return [(x, y) for x, y in self.headers if x.lower() == b'dkim-signature']

    def parse_signature(self, idx):
        sigheaders = self.signatures()
        if not 0 <= idx < len(sigheaders):
            raise dkim.MessageFormatError(
                "no DKIM-Signature header at index %d (message has %d)" % (idx, len(sigheaders)))
        try:
            return parse_tag_value(sigheaders[idx][1])
        except InvalidTagValueList as e:
            raise dkim.MessageFormatError(e)

    def select(self, domain=None, index=None) -> int:
        """ Pick the signature to verify

        @param domain: signing domain (d=) to look for
        @param index: explicit position of the header, wins over domain
        @return: int index into signatures()
        """
        sigheaders = self.signatures()
        if not sigheaders:
            raise dkim.MessageFormatError("no DKIM-Signature header")
        if index is not None:
            if not 0 <= index < len(sigheaders):
                raise dkim.MessageFormatError(
                    "no DKIM-Signature header at index %d (message has %d)" % (index, len(sigheaders)))
            return index
        if domain is None:
            return 0

        if isinstance(domain, str):
            domain = domain.encode('ascii')
        for idx in range(len(sigheaders)):
            try:
                sig = self.parse_signature(idx)
            except dkim.MessageFormatError as e:
                self.logger.debug("skipping unparsable signature %d: %s", idx, e)
                continue
            if sig.get(b'd', b'').lower() == domain.lower():
                return idx
        raise dkim.MessageFormatError("no DKIM-Signature for domain %s" % domain.decode())

    def canon_policy(self, sig):
        try:
            return CanonicalizationPolicy.from_c_value(sig.get(b'c', b'simple/simple'))
        except InvalidCanonicalizationPolicyError as e:
            raise dkim.MessageFormatError("invalid c= value: %s" % e.args[0])

    def body_hash(self, sig):
        """ Canonicalize and hash the body

        @return: (canonical_body, digest)
        @raise dkim.ValidationError: the digest does not match bh=
        """
        body = self.canon_policy(sig).canonicalize_body(self.body)
        if b'l' in sig:
            body = body[:int(sig[b'l'])]
        hasher = HASH_ALGORITHMS[sig[b'a']]()
        hasher.update(body)
        digest = hasher.digest()
        self.logger.debug("bh: %s", base64.b64encode(digest))

        try:
            bh = base64.b64decode(strip_fws(sig[b'bh']))
        except ValueError as e:
            raise dkim.MessageFormatError(str(e))
        if digest != bh:
            raise dkim.ValidationError(
                "body hash mismatch (got %s, expected %s)" % (base64.b64encode(digest), sig[b'bh']))
        return body, digest

    def header_data(self, sig, idx):
        """ The exact bytes the signature was computed over

        Signed headers in h= order, then the DKIM-Signature header itself
        with an empty b= and no trailing CRLF.
        """
        canon_policy = self.canon_policy(sig)
        headers = canon_policy.canonicalize_headers(self.headers)

        include_headers = [x.lower() for x in re.split(br"\s*:\s*", sig[b'h'])]
        # a second From header must break the signature
        if b'from' in include_headers:
            include_headers.append(b'from')
        sign_headers = select_headers(headers, include_headers)

        sigheader = self.signatures()[idx]
        cheaders = canon_policy.canonicalize_headers([(sigheader[0], RE_BTAG.sub(b'\\1', sigheader[1]))])
        sign_headers += [(x, y.rstrip()) for x, y in cheaders]

        return b''.join(x + b':' + y for x, y in sign_headers)

    def fetch_key(self, sig) -> KeyRecord:
        name = sig[b's'] + b'._domainkey.' + sig[b'd'] + b'.'
        txt = self.dnsfunc(name)
        if not txt:
            raise dkim.KeyFormatError("missing public key: %s" % name.decode())
        key = parse_key_record(txt)
        expected = b'ed25519' if sig[b'a'] == b'ed25519-sha256' else b'rsa'
        if key.key_type != expected:
            raise dkim.KeyFormatError(
                "key type %s does not match a=%s" % (key.key_type.decode(), sig[b'a'].decode()))
        if key.key_type == b'rsa' and key.key_size < self.minkey:
            raise dkim.KeyFormatError("public key too small: %d" % key.key_size)
        return key

    def verify_signature(self, sig, header_data, signature, key):
        hasher = HASH_ALGORITHMS[sig[b'a']]()
        hasher.update(header_data)

        if key.key_type == b'ed25519':
            try:
                key.verify_key.verify(hasher.digest(), signature)
                return True
            except (nacl.exceptions.BadSignatureError, nacl.exceptions.ValueError):
                return False

        # RSASSA-PKCS1-v1_5: sig^e mod n must equal the encoded digest
        modlen = len(int2str(key.modulus))
        if len(signature) > modlen:
            return False
        try:
            digest_encoded = EMSA_PKCS1_v1_5_encode(hasher, modlen)
        except DigestTooLargeError:
            raise dkim.KeyFormatError("digest too large for modulus")
        signed_digest = int2str(pow(str2int(signature), key.exponent, key.modulus), modlen)
        return digest_encoded == signed_digest

    def verify(self, idx=0, check_expiry=False) -> DKIMResult:
        """ Verify the DKIM-Signature at idx

        @param idx: int, which signature to verify, the topmost is 0
        @param check_expiry: bool, also enforce t= and x=
        @return: DKIMResult
        @raise dkim.DKIMException: when the message, signature or key is
            badly formed, or the signature does not verify
        """
        sig = self.parse_signature(idx)
        self.logger.debug("sig: %r", sig)
        validate_signature_fields(sig)
        if check_expiry:
            check_times(sig)
            self.logger.info("== time stamps ok ==")

        body, _ = self.body_hash(sig)
        self.logger.info("== body hash ok ==")

        key = self.fetch_key(sig)
        header_data = self.header_data(sig, idx)
        self.logger.debug("signed header data: %r", header_data)

        try:
            signature = base64.b64decode(strip_fws(sig[b'b']))
        except ValueError as e:
            raise dkim.MessageFormatError(str(e))
        if not self.verify_signature(sig, header_data, signature, key):
            raise dkim.ValidationError("signature verification failed")
        self.logger.info("== signature of %s ok ==", sig[b'd'].decode())

        return DKIMResult(
            domain=sig[b'd'],
            selector=sig[b's'],
            algorithm=sig[b'a'],
            signature=signature,
            public_key=key,
            headers=header_data,
            body=body,
            body_hash=strip_fws(sig[b'bh']).decode('ascii'),
        )
