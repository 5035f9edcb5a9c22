import mimetypes
import os
from dataclasses import dataclass

# Configurations:

PORT = 13377  # running on this port shows only this session's uploads
MAX_UPLOAD_MB = 50

FOLDER_TO_SERVE = "."

STATIC_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "static")

AUTH_REALM = "Kutta File Server"

ICON_TABLE = {
    '.exe': 'executable', '.bin': 'executable',
    '.dll': 'library', '.so': 'library', '.dylib': 'library',
    '.sys': 'system',
    '.iso': 'disk-image', '.img': 'disk-image',
    '.txt': 'text', '.md': 'text', '.log': 'text',
    '.jpg': 'image', '.jpeg': 'image', '.png': 'image', '.gif': 'image',
    '.zip': 'archive', '.tar': 'archive', '.gz': 'archive', '.rar': 'archive',
    '.go': 'source', '.c': 'source', '.cpp': 'source', '.py': 'source', '.js': 'source',
}

ICON_GLYPHS = {
    'folder': '\U0001F4C2',
    'executable': '\U0001F4BB',
    'library': '\U0001F9E9',
    'system': '\U0001F512',
    'disk-image': '\U0001F4C0',
    'text': '\U0001F4C4',
    'image': '\U0001F5BC️',
    'archive': '\U0001F4E6',
    'source': '⚙️',
    'document': '\U0001F4C4',
}


@dataclass(frozen=True)
class ServerConfig:
    """Startup settings shared read-only by every request thread."""

    base_dir: str = FOLDER_TO_SERVE
    read_only: bool = False
    upload_only: bool = False
    auth_creds: str = ""
    uploads_only_listing: bool = False
    max_form_bytes: int = MAX_UPLOAD_MB * 1024 * 1024

    @property
    def auth_enabled(self) -> bool:
        return self.auth_creds != ""


if not mimetypes.inited:
    mimetypes.init()
mimetypes.add_type('video/mp4', '.mp4')
mimetypes.add_type('video/webm', '.webm')
mimetypes.add_type('text/markdown', '.md')
mimetypes.add_type('text/plain', '.log')
