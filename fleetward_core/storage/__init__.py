from fleetward_core.storage.documents import read_document, write_document
from fleetward_core.storage.paths import control_uri, data_root, join_uri

__all__ = [
    "control_uri",
    "data_root",
    "join_uri",
    "read_document",
    "write_document",
]
