import sys

from pipelinesync.interface.cli import main

sys.exit(main())
