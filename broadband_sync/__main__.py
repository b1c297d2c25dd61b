import sys

from broadband_sync.cli import main

sys.exit(main())
