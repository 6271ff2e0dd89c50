import sys

from whisp_away.cli import main

sys.exit(main())
