import os
from pathlib import Path
from dataclasses import dataclass

# Lil helper function to create missing directories if missing, and optionally error out when a path
# doesn't exist.
def ensure_directory(path: Path,must_exist=False):
    if must_exist:
        if not path.exists():
            raise FileNotFoundError(f"Required directory is missing: {path}")
        if not path.is_dir():
            raise NotADirectoryError(f"Expected a directory, got a file: {path}")
    else:
        path.mkdir(parents=True,exist_ok=True)
    return path

# Resolves the base data folder. KT_HOME wins, then APPDATA (Windows installs), then a dot folder in home.
def resolve_data_root() -> Path:
    explicit = os.getenv("KT_HOME")
    if explicit:
        return Path(explicit)
    appdata = os.getenv("APPDATA")
    if appdata:
        return Path(appdata) / "KartTimer"
    return Path.home() / ".karttimer"

# Dataclass for accessing paths across program.
@dataclass(frozen=False)
class ProjectPaths:

    root: Path
    data: Path

    logs: Path
    current: Path
    snapshots: Path
    sessions: Path

    @staticmethod
    def build(data_root: Path | None = None):
        # Folder for the package source itself
        root = Path(__file__).resolve().parents[2]

        # Folder for all karttimer device-specific and shift related stuff
        data = ensure_directory(data_root or resolve_data_root())

        # Folders within the data folder
        logs = ensure_directory(data / "logs")
        current = ensure_directory(data / "current")
        snapshots = ensure_directory(data / "snapshots")
        sessions = ensure_directory(data / "completed_shifts")

        return ProjectPaths(
            root = root,
            data = data,
            logs = logs,
            current = current,
            snapshots = snapshots,
            sessions = sessions
        )
PATHS = ProjectPaths.build()
