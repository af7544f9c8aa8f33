from layerkit.cli import main

raise SystemExit(main())
