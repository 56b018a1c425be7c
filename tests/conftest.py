import base64
import time
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

import dkim
import nacl.signing
import pytest
from Crypto.PublicKey import RSA

SELECTOR = b's20240725'
DOMAIN = b'cucker.top'

SIGN_HEADERS = [b'from', b'to', b'subject', b'message-id']


def generate_email(subject='A DKIM mail', text='Test email displayed as text only\n'):
    msg = MIMEMultipart('alternative')
    msg['From'] = 'lisa@cucker.top'
    msg['To'] = 'hanxiao2100@gmail.com'
    msg['Subject'] = subject
    msg['Message-ID'] = "<" + str(time.time()) + "-lisa@cucker.top" + ">"

    html = """\
<!doctype html>
<html>
<body>
    HTML Body of Test DKIM
</body>
</html>
"""
    msg.attach(MIMEText(text, 'plain'))
    msg.attach(MIMEText(html, 'html'))
    return msg.as_bytes()


class FakeDNS:
    """Serves key records from a dict, like a zone file."""

    def __init__(self):
        self.records = {}

    def add(self, selector, domain, record):
        self.records[selector + b'._domainkey.' + domain + b'.'] = record

    def __call__(self, name, timeout=5):
        return self.records.get(name)


@pytest.fixture(scope='session')
def rsa_key():
    return RSA.generate(1024)


@pytest.fixture(scope='session')
def rsa_record(rsa_key):
    return b'v=DKIM1; k=rsa; p=' + base64.b64encode(rsa_key.publickey().export_key(format='DER'))


@pytest.fixture(scope='session')
def ed25519_key():
    return nacl.signing.SigningKey.generate()


@pytest.fixture(scope='session')
def ed25519_record(ed25519_key):
    return b'v=DKIM1; k=ed25519; p=' + base64.b64encode(bytes(ed25519_key.verify_key))


@pytest.fixture
def dns(rsa_record, ed25519_record):
    fake = FakeDNS()
    fake.add(SELECTOR, DOMAIN, rsa_record)
    fake.add(b'ed', DOMAIN, ed25519_record)
    return fake


@pytest.fixture
def sign(rsa_key):
    """ Sign a message and prepend the DKIM-Signature header

    Keyword arguments go to dkim.sign.
    """
    def _sign(message, selector=SELECTOR, domain=DOMAIN, privkey=None, **kwargs):
        kwargs.setdefault('include_headers', SIGN_HEADERS)
        kwargs.setdefault('canonicalize', (b'relaxed', b'simple'))
        if privkey is None:
            privkey = rsa_key.export_key()
        sig = dkim.sign(message, selector, domain, privkey, **kwargs)
        return sig + message
    return _sign


@pytest.fixture
def sign_ed25519(sign, ed25519_key):
    def _sign(message, **kwargs):
        return sign(message, selector=b'ed', privkey=base64.b64encode(bytes(ed25519_key)),
                    signature_algorithm=b'ed25519-sha256', **kwargs)
    return _sign


@pytest.fixture
def signed_email(sign):
    return sign(generate_email())


@pytest.fixture
def make_email():
    return generate_email
