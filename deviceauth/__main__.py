import sys

from deviceauth.cli import main

sys.exit(main())
