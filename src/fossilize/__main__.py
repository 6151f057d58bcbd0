import sys

from fossilize.cli import main

sys.exit(main())
