import sys

from vmkeeper.cli import main

sys.exit(main())
