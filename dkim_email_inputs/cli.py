"""
Command line entry point

    dkim-email-inputs generate test-email.eml -o email-inputs.json
    dkim-email-inputs check email-inputs.json
"""
import argparse
import logging
import sys

import dkim

from dkim_email_inputs.inputs import (
    DEFAULT_OUTPUT,
    InputsError,
    check_inputs,
    generate_email_inputs,
    load_inputs,
    remove_stale,
    write_inputs,
)
from dkim_email_inputs.keys import DEFAULT_TIMEOUT, make_dnsfunc, static_dnsfunc

logger = logging.getLogger('dkim_email_inputs')


def setup_logging(verbose=False):
    logging.basicConfig(
        stream=sys.stderr,
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(levelname)s %(name)s: %(message)s')


def build_parser():
    parser = argparse.ArgumentParser(
        prog='dkim-email-inputs',
        description='Verify the DKIM signature of an email and export the signed data as JSON.')
    parser.add_argument('-v', '--verbose', action='store_true', default=False,
        help='turn verbose mode on')
    sub = parser.add_subparsers(dest='command', required=True)

    gen = sub.add_parser('generate', help='verify an email and write its email inputs')
    gen.add_argument('email', help='raw email (.eml) file, - for stdin')
    gen.add_argument('-o', '--output', default=DEFAULT_OUTPUT,
        help='JSON file to write: default=%s' % DEFAULT_OUTPUT)
    gen.add_argument('-d', '--domain', default=None,
        help='verify the signature of this signing domain (d=)')
    gen.add_argument('--index', metavar='N', type=int, default=None,
        help='index of the DKIM-Signature header to verify, topmost is 0')
    gen.add_argument('--nameserver', action='append', default=None,
        help='DNS server to query, may be repeated')
    gen.add_argument('--timeout', type=float, default=DEFAULT_TIMEOUT,
        help='DNS timeout in seconds: default=%s' % DEFAULT_TIMEOUT)
    key = gen.add_mutually_exclusive_group()
    key.add_argument('--key-record', default=None,
        help='use this DKIM key record instead of DNS, e.g. "v=DKIM1; k=rsa; p=..."')
    key.add_argument('--key-file', default=None,
        help='file containing the DKIM key record to use instead of DNS')
    gen.add_argument('--check-expiry', action='store_true', default=False,
        help='also reject signatures past x= or with t= in the future')
    gen.add_argument('--minkey', type=int, default=1024,
        help='smallest accepted RSA key in bits: default=1024')

    chk = sub.add_parser('check', help='re-check an email inputs JSON file offline')
    chk.add_argument('inputs', help='email inputs JSON file')
    return parser


def read_email(path) -> bytes:
    if path == '-':
        return sys.stdin.buffer.read()
    with open(path, 'rb') as f:
        return f.read()


def dnsfunc_from_args(args):
    if args.key_record:
        return static_dnsfunc(args.key_record)
    if args.key_file:
        with open(args.key_file, 'rb') as f:
            return static_dnsfunc(f.read())
    return make_dnsfunc(nameservers=args.nameserver, timeout=args.timeout)


def cmd_generate(args):
    remove_stale(args.output)
    message = read_email(args.email)
    inputs = generate_email_inputs(
        message,
        dnsfunc=dnsfunc_from_args(args),
        domain=args.domain,
        index=args.index,
        check_expiry=args.check_expiry,
        minkey=args.minkey,
    )
    write_inputs(inputs, args.output)
    return 0


def cmd_check(args):
    inputs = load_inputs(args.inputs)
    if not check_inputs(inputs):
        return 1
    logger.info("== email inputs of %s verify ==", inputs.signing_domain or args.inputs)
    return 0


COMMANDS = {
    'generate': cmd_generate,
    'check': cmd_check,
}


def main(argv=None):
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)
    try:
        return COMMANDS[args.command](args)
    except (dkim.DKIMException, InputsError, OSError) as e:
        logger.error("%s failed: %s", args.command, e)
        return 1


if __name__ == '__main__':
    sys.exit(main())
