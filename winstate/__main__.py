from winstate.main import main

raise SystemExit(main())
