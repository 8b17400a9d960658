import sys

from duochat.main import main

sys.exit(main())
