# run.py
import os

from dotenv import load_dotenv
import uvicorn

load_dotenv(override=True)


def run_server(port: int, reload: bool = True):
    """Start uvicorn, retrying without reload if the watcher lacks permission."""
    try:
        uvicorn.run("lifepath.api:app", host="0.0.0.0", port=port, reload=reload)
    except (PermissionError, OSError) as exc:
        err_no = getattr(exc, "errno", None)
        if reload and err_no == 1:
            print("ℹ️  Reload watcher not permitted; restarting server without reload.")
            uvicorn.run("lifepath.api:app", host="0.0.0.0", port=port, reload=False)
        else:
            raise


if __name__ == "__main__":
    server_port = int(os.getenv("DEV_SERVER_PORT") or 8000)
    # the scheduler runs inside the API process unless SCHEDULER_ENABLED=0;
    # auto-reload would start a second copy of it, so reload is off by default
    reload_pref = os.getenv("UVICORN_RELOAD", "false").strip().lower() in {"1", "true", "yes"}
    run_server(server_port, reload=reload_pref)
