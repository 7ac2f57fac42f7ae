import sys

from esk_builder.build import main

if __name__ == "__main__":
    sys.exit(main())
