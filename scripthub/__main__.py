import sys

from scripthub.main import main

sys.exit(main())
