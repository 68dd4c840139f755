"""Development server with hot-reload functionality.

Serves the tracking API while replaying the bundled demo trace in real
time. Monitors the telemetry package, environment files and demo data for
changes and restarts the server accordingly.
"""

from pathlib import Path

import uvicorn


def main() -> None:
    """Start the development server with hot-reload enabled.

    The server monitors the following file types for changes:
    - Python files (*.py) in telemetry/ directory
    - Environment files (.env) in project root
    - Demo data files (*.csv, *.json) in data/

    When any monitored file changes, the server restarts and the replay
    starts over.
    """
    project_root = Path(__file__).parent.parent

    uvicorn.run(
        "main:create_demo_app",
        factory=True,
        host="0.0.0.0",
        port=8000,
        reload=True,
        reload_dirs=[str(project_root / "telemetry"), str(project_root / "data")],
        reload_includes=["*.py", "*.env", "*.csv", "*.json"],
        log_level="info",
        access_log=True,
    )


if __name__ == "__main__":
    main()
