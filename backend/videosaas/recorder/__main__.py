from .bootstrap import main

raise SystemExit(main())
