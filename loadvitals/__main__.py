from loadvitals.cli import main

raise SystemExit(main())
