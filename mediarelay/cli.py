from __future__ import annotations

import os
import sys
from loguru import logger

from mediarelay.config import MEDIARELAY_HOST, MEDIARELAY_PORT, MEDIARELAY_RELOAD


def run_server(app_obj):
    """Run the Uvicorn server.

    - Reload is off unless MEDIARELAY_RELOAD is set
    - Frozen (packaged) runs never reload
    """
    import uvicorn

    is_frozen = getattr(sys, "frozen", False) or hasattr(sys, "_MEIPASS")
    reload_env = os.environ.get("MEDIARELAY_RELOAD")
    if reload_env is not None:
        reload_flag = reload_env == "1" or reload_env.strip().lower() == "true"
    else:
        reload_flag = MEDIARELAY_RELOAD
    reload_flag = reload_flag and not is_frozen

    if reload_flag:
        logger.info("Uvicorn reload enabled (development mode).")
        uvicorn.run(
            "mediarelay.main:app",
            host=MEDIARELAY_HOST,
            port=MEDIARELAY_PORT,
            reload=True,
        )
    else:
        logger.info(f"Serving on {MEDIARELAY_HOST}:{MEDIARELAY_PORT}")
        uvicorn.run(
            app_obj,
            host=MEDIARELAY_HOST,
            port=MEDIARELAY_PORT,
            reload=False,
        )


def main():
    from mediarelay.main import app

    run_server(app)


if __name__ == "__main__":
    main()
