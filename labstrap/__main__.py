import sys

from labstrap.cli import main

sys.exit(main())
