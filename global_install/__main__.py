from global_install.cli import main

raise SystemExit(main())
