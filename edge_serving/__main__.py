import sys

from edge_serving.cli import main

sys.exit(main())
