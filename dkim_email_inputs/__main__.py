import sys

from dkim_email_inputs.cli import main

sys.exit(main())
