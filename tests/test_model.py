from datetime import datetime

from petriage.model import AnalysisRecord, FileInfo, Manifest


def _fileinfo() -> FileInfo:
    return FileInfo(
        file_type="PE32 executable",
        size=1024,
        entropy=3.5,
        md5="0" * 32,
        sha1="0" * 40,
        sha256="0" * 64,
        sha512="0" * 128,
        preview="MZ..",
    )


def test_manifest_timestamp_utc_format():
    m = Manifest(scan_id="test")
    assert m.timestamp_utc.endswith("Z")
    datetime.fromisoformat(m.timestamp_utc.replace("Z", "+00:00"))


def test_record_defaults():
    r = AnalysisRecord(filename="a.exe", analyzer_version=2, pe_fileinfo=_fileinfo())
    assert r.static_info is None
    assert r.imports == {}
    assert r.authenticode_info.has_signature is False
    assert r.errors == []


def test_record_round_trip_validation():
    r = AnalysisRecord(
        filename="a.exe",
        analyzer_version=2,
        pe_fileinfo=_fileinfo(),
        imports={"KERNEL32.dll": ["ExitProcess"]},
        artifacts={"all": {"urls": ["http://evil.test/"]}},
        errors=[{"code": "E_X", "message": "m"}],
    )
    dumped = r.model_dump()
    again = AnalysisRecord.model_validate(dumped)
    assert again == r
    assert dumped["artifacts"]["all"]["urls"] == ["http://evil.test/"]
