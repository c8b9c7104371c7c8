import hashlib
import os
from kt.common.logger import log
from kt.common.setup import PATHS

# On-disk cache of station thumbnails, keyed by the station's image reference. Lets the board show pictures when the
# service is unreachable and saves refetching them on every refresh.
class ImageCache:

    def __init__(self, directory=None):
        self.directory = directory or PATHS.data / "images"

    def path_for(self, ref):
        return self.directory / f"{hashlib.sha1(ref.encode('utf-8')).hexdigest()}.img"

    def get(self, ref):
        if not ref:
            return None
        path = self.path_for(ref)
        if not path.is_file():
            return None
        return path.read_bytes()

    # Written through a temp file, like state.json, so a half-written image never gets cached.
    def put(self, ref, data):
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self.path_for(ref)
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_bytes(data)
        os.replace(tmp_path, path)
        log.debug(f"Cached station image for '{ref[:60]}' at '{path}'")
        return path
