import sys

from dropkick.cli import main

sys.exit(main())
