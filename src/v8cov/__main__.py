import sys

from v8cov.cli import main

sys.exit(main())
