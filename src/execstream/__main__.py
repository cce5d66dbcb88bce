from execstream.cli.main import main

raise SystemExit(main())
