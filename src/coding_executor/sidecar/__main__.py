import sys

from coding_executor.sidecar.server import main

sys.exit(main())
