import sys

from provisioner.main import main

sys.exit(main())
