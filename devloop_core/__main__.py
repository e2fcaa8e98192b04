from devloop_core.cli import main

raise SystemExit(main())
