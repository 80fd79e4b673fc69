from __future__ import annotations

import sys

from mywarranties.bootstrap.logging import write_crash_log
from mywarranties.bootstrap.settings import resolve_log_dir
from mywarranties.entrypoints.main import main


try:
    raise SystemExit(main())
except SystemExit:
    raise
except Exception:  # noqa: BLE001
    exc_type, exc_value, exc_traceback = sys.exc_info()
    if exc_type is None or exc_value is None:
        raise SystemExit(2)
    crash_path = write_crash_log(exc_type, exc_value, exc_traceback, resolve_log_dir())
    sys.stderr.write(f"Error inesperado. Detalle en {crash_path}\n")
    raise SystemExit(2)
