"""Allow ``python -m chatengine``."""

from chatengine.cli.main import main

raise SystemExit(main())
