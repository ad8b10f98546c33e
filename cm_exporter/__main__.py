import sys

from cm_exporter.cli import main

sys.exit(main())
