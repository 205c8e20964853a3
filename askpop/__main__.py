from askpop.app import main

raise SystemExit(main())
