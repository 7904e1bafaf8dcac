import sys

from canary_deploy.cli import main

sys.exit(main())
