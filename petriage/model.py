from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


def utc_now_iso() -> str:
    """
    UTC timestamp in ISO-8601 with 'Z' suffix, seconds precision.
    Example: 2026-01-08T17:12:34Z
    """
    return (
        datetime.now(timezone.utc)
        .replace(microsecond=0)
        .isoformat()
        .replace("+00:00", "Z")
    )


class FileInfo(BaseModel):
    file_type: str
    size: int
    entropy: float
    md5: str
    sha1: str
    sha256: str
    sha512: str
    preview: str


class RichEntryInfo(BaseModel):
    comp_id: int
    version: int
    count: int


class StaticInfo(BaseModel):
    machine: str
    magic: str
    is_64bit: bool
    is_dll: bool
    entry_point: int
    entry_point_section: str
    image_base: int
    subsystem: str
    os_version: str
    image_version: str
    subsystem_version: str
    file_characteristics: List[str] = Field(default_factory=list)
    dll_characteristics: List[str] = Field(default_factory=list)
    time_date_stamp: int
    timestamp: str
    digitally_signed: bool
    tls_callbacks: str
    clr_runtime: str
    rich_header_offset: Optional[int] = None
    rich_xor_key: str = ""
    rich_entries: List[RichEntryInfo] = Field(default_factory=list)
    import_hash: str = ""


class DataDirectoryInfo(BaseModel):
    index: int
    name: str
    virtual_address: int
    size: int
    containing_section: str


class ExportInfo(BaseModel):
    name: str
    ordinal: int
    address: int
    forwarder: Optional[str] = None


class SectionInfo(BaseModel):
    name: str
    virtual_address: int
    virtual_size: int
    raw_offset: int
    raw_size: int
    characteristics: int
    md5: str
    entropy: float
    type: str
    is_executable: bool
    is_writable: bool


class PackingIndicator(BaseModel):
    section: str
    indicator: str
    detail: str = ""


class ResourceInfo(BaseModel):
    type: str
    id1: str = ""
    id2: str = ""
    rva: int
    size: int
    file_offset: Optional[int] = None
    sniffed_kind: str = ""
    version_info: Dict[str, str] = Field(default_factory=dict)


class CertificateInfo(BaseModel):
    subject: str
    issuer: str
    serial_number: str
    not_before: str
    not_after: str
    public_key_algorithm: str
    sha1_thumbprint: str
    sha256_thumbprint: str
    der_base64: str


class AuthenticodeInfo(BaseModel):
    has_signature: bool = False
    is_valid: bool = False
    validation_error: str = ""
    subject: str = ""
    issuer: str = ""
    serial_number: str = ""
    not_before: str = ""
    not_after: str = ""
    public_key_algorithm: str = ""
    sha1_thumbprint: str = ""
    sha256_thumbprint: str = ""
    certificate_chain: List[CertificateInfo] = Field(default_factory=list)


class AnalysisRecord(BaseModel):
    filename: str
    analyzer_version: int
    timestamp_utc: str = Field(default_factory=utc_now_iso)

    pe_fileinfo: FileInfo
    static_info: Optional[StaticInfo] = None
    data_directories: List[DataDirectoryInfo] = Field(default_factory=list)
    imports: Dict[str, List[str]] = Field(default_factory=dict)
    exports: List[ExportInfo] = Field(default_factory=list)
    sections: List[SectionInfo] = Field(default_factory=list)
    packing_indicators: List[PackingIndicator] = Field(default_factory=list)
    resources: List[ResourceInfo] = Field(default_factory=list)
    authenticode_info: AuthenticodeInfo = Field(default_factory=AuthenticodeInfo)
    artifacts: Dict[str, Dict[str, List[str]]] = Field(default_factory=dict)
    extracted_strings: str = ""

    errors: List[Dict[str, Any]] = Field(default_factory=list)


class Manifest(BaseModel):
    schema_version: str = "1.0"
    scan_id: str
    timestamp_utc: str = Field(default_factory=utc_now_iso)

    tool: Dict[str, Any] = Field(default_factory=dict)
    environment: Dict[str, Any] = Field(default_factory=dict)
    config_snapshot: Dict[str, Any] = Field(default_factory=dict)
    inputs: List[Dict[str, Any]] = Field(default_factory=list)
