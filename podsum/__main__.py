import sys

from podsum.cli import main

sys.exit(main())
