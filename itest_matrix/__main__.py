import sys

from itest_matrix.cli import main

sys.exit(main())
