import sys

from device_upgrade.cli import main

sys.exit(main())
