from signage.media.container import has_mp4_signature, inspect_container


def test_faststart_file(make_mp4):
    result = inspect_container(make_mp4(4096, faststart=True))
    assert result.is_mp4
    assert result.brand == "isom"
    assert result.boxes == ["ftyp", "moov", "mdat"]
    assert result.faststart


def test_moov_after_mdat_is_not_faststart(make_mp4):
    result = inspect_container(make_mp4(4096, faststart=False))
    assert result.has_moov
    assert result.boxes == ["ftyp", "mdat", "moov"]
    assert not result.faststart


def test_non_mp4_bytes():
    data = b"RIFF\x00\x00\x00\x00AVI LIST" + b"\x00" * 64
    assert not has_mp4_signature(data)
    result = inspect_container(data)
    assert not result.is_mp4
    assert result.boxes == []


def test_truncated_file_has_no_moov(make_mp4):
    data = make_mp4(4096)[:36]
    result = inspect_container(data)
    assert result.is_mp4
    assert not result.has_moov
