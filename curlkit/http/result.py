from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from requests.structures import CaseInsensitiveDict


class Info(Enum):
    """Transfer information keys; values are the names used in snapshots."""
    EFFECTIVE_URL = "url"
    EFFECTIVE_METHOD = "effective_method"
    HTTP_CODE = "http_code"
    RESPONSE_CODE = "http_code"
    HTTP_VERSION = "http_version"
    CONTENT_TYPE = "content_type"
    HEADERS = "headers"
    HEADER_SIZE = "header_size"
    REQUEST_SIZE = "request_size"
    REDIRECT_COUNT = "redirect_count"
    REDIRECT_URL = "redirect_url"
    TOTAL_TIME = "total_time"
    NAMELOOKUP_TIME = "namelookup_time"
    CONNECT_TIME = "connect_time"
    APPCONNECT_TIME = "appconnect_time"
    STARTTRANSFER_TIME = "starttransfer_time"
    SIZE_UPLOAD = "size_upload"
    SIZE_DOWNLOAD = "size_download"
    SPEED_DOWNLOAD = "speed_download"
    DOWNLOAD_CONTENT_LENGTH = "download_content_length"
    PRIMARY_IP = "primary_ip"
    PRIMARY_PORT = "primary_port"


@dataclass
class TransferResult:
    """
    Outcome of one execute() call. Headers keep wire order and duplicates;
    header() gives case-insensitive access.
    """
    status_code: int
    reason: str
    http_version: str
    headers: List[Tuple[str, str]]
    body: bytes
    effective_url: str
    effective_method: str = "GET"
    redirect_count: int = 0
    redirect_url: Optional[str] = None
    primary_ip: str = ""
    primary_port: int = 0
    header_size: int = 0
    request_size: int = 0
    size_upload: int = 0
    total_time: float = 0.0
    namelookup_time: float = 0.0
    connect_time: float = 0.0
    appconnect_time: float = 0.0
    starttransfer_time: float = 0.0
    _header_map: CaseInsensitiveDict = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        merged = CaseInsensitiveDict()
        for name, value in self.headers:
            if name in merged:
                merged[name] = f"{merged[name]}, {value}"
            else:
                merged[name] = value
        self._header_map = merged

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def content_type(self) -> Optional[str]:
        return self.header("Content-Type")

    @property
    def size_download(self) -> int:
        return len(self.body)

    @property
    def download_content_length(self) -> int:
        declared = self.header("Content-Length")
        if declared is None or not declared.isdigit():
            return -1
        return int(declared)

    @property
    def speed_download(self) -> float:
        if self.total_time <= 0:
            return 0.0
        return self.size_download / self.total_time

    def header(self, name: str, default: Optional[str] = None) -> Optional[str]:
        """Header value, with repeated headers joined by ", "."""
        return self._header_map.get(name, default)

    def header_values(self, name: str) -> List[str]:
        lowered = name.lower()
        return [value for key, value in self.headers if key.lower() == lowered]

    def info(self, key: Info) -> Any:
        if key is Info.EFFECTIVE_URL:
            return self.effective_url
        if key is Info.HTTP_CODE:
            return self.status_code
        if key is Info.HEADERS:
            return list(self.headers)
        return getattr(self, key.value)

    def info_array(self) -> Dict[str, Any]:
        return {key.value: self.info(key) for key in Info}
