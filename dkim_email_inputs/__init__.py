from dkim_email_inputs.inputs import (
    EmailInputs,
    InputsError,
    InputsFormatError,
    check_inputs,
    generate_email_inputs,
    load_inputs,
    write_inputs,
)
from dkim_email_inputs.keys import KeyLookupError, KeyRecord, parse_key_record
from dkim_email_inputs.verifier import DKIMResult, DKIMVerifier

__version__ = '0.1.0'
