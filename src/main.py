"""
PipelineSync - CRM pipeline workbooks with preserved annotations.

Refreshes per-owner and per-group Excel stores from the CRM and keeps
notes, flags and highlighting in sync between them.
"""

import sys

from pipelinesync.interface.cli import main


if __name__ == "__main__":
    sys.exit(main())
