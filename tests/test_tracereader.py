import gzip
import io

import pytest

from memwalk.tracereader import (
    BulkTraceReader,
    CloudsuiteRecord,
    Instruction,
    RepeatableReader,
    TraceReader,
    TraceRecord,
    apply_branch_target,
    decode_records,
    get_tracereader,
    open_trace,
    set_branch_targets,
)

PLAINTEXT = (
    "Lorem ipsum dolor sit amet, consectetur adipiscing elit, sed do eiusmod tempor incididunt ut labore et "
    "dolore magna aliqua. Ut enim ad minim veniam, quis nostrud exercitation ullamco laboris nisi ut aliquip "
    "ex ea commodo consequat. Duis aute irure dolor in reprehenderit in voluptate velit esse cillum dolore eu "
    "fugiat nulla pariatur. Excepteur sint occaecat cupidatat non proident, sunt in culpa qui officia deserunt "
    "mollit anim id est laborum."
)

GZIP_CYPHERTEXT = bytes.fromhex(
    "1f8b0808dd3e22630003312e74787400"
    "3590c17143310844efa9620bf0fc2a92"
    "5bae298020ec30230959028fcb0ff24f"
    "6e42c0b2fb3e6d4a838e150dc5aa4d2c"
    "755013bf80ad2f61178f092a3a74b1f6"
    "1ba46a3697945c8068ac66052e6de4b2"
    "76d6a225ba231c95be531ee2a7b4a0d1"
    "ad13a8ea3de8c09743bab6d446d3fd78"
    "6449ed827be842b7e5330ae42993d5c9"
    "d53aa2566a6ca7f21ed2a5fbd24b5247"
    "0e43288db7f46467803ce507deb72485"
    "0b74463a39b36ac79431e5477a9199c1"
    "f3e36135469e93b49349216b09586bfd"
    "27948102d7b82939fa368441338b9807"
    "3e9e2cc32536c66460cc249c731c430b"
    "f9dec814639a16e99be226954739eaa0"
    "9d1b76bd2a2ba1c892b9bbcdeab6411b"
    "90268ef5c735daf1f60b677b9f87be01"
    "0000"
)

XZ_CYPHERTEXT = bytes.fromhex(
    "fd377a585a000004e6d6b44602002101"
    "16000000742fe5a3e001bd013e5d0026"
    "1bca46675af277b87d86d841db0535cd"
    "83a57c12a505db90bd2f14d3717296a8"
    "8a7d8456718d6a2298ab9e3dc355efcc"
    "a5c3dd5b8ebf03812140d6269102454f"
    "92a178bb8a00af902a26920223e55cb3"
    "2de3e85c2cfb3221c66f6a37b16620cd"
    "b7527d66a42108d144146c7d34906dd6"
    "47ad5d5a907628c8e78f78224707179e"
    "9d957f6f30a4e03a53b714b6429d20c2"
    "fd88b449b1b6f7db8c7fe29d589f6655"
    "01449e4c216c4d463c169ff553aa19e2"
    "d64b56c219d0c13c5b8b1a26e8b841a5"
    "b82575940ce598c9e3dd82bf46457204"
    "a288f1a907d6e2d6a45fccd591a464ac"
    "b111aebd205f895a0436987954dd2926"
    "5e701df487c33de64a8b3787261f6c1b"
    "107c4372ffef573ea238caca51c1128b"
    "d2696ff709ade27a3f40c73ae9bdf225"
    "5e39cfcf1030b04f7a720721ed25db5a"
    "ec0d0a51746bbc250a92016e00000000"
    "bcfdfc0058e091d40001da02be030000"
    "043fdbf5b1c467fb020000000004595a"
)

BZ2_CYPHERTEXT = bytes.fromhex(
    "425a68393141592653599f4332ad0000"
    "27d78000104005060402003fe7ff4030"
    "012db636227a4c81308d47a9ea7a9e50"
    "6a69e8d53ca4da9900c8d06a79044c4c"
    "a3440f506915f32d335db639cb92ee89"
    "271f86939c5a3dc16801b9b006e3a000"
    "bf33c9d23706ad136bbb2209adbc8f26"
    "6b6ef7b5491f79425d098cc65820ad2c"
    "b3dbbac65db6d4da5832c74cc8a57773"
    "606aada333a708de035da2596cfb2185"
    "65a26014f675b57b394d7158c6fd3ea2"
    "0c5225abeb359f40b64e2f69106fa56a"
    "1d82c381cfa20274cc0b986940c71a6a"
    "d6093e0b122aa2902c18c3e861700e53"
    "81d46b8435b3fa47684cbe396c72ecec"
    "8b22da04972a972fb50fd335683ac4b3"
    "b91442977814bf1968a2830517224a33"
    "ac199bb723c7ab96c4e528f9031844f3"
    "a0b6815031783f8bb9229c28484fa199"
    "5680"
)


@pytest.mark.parametrize(
    "suffix, payload",
    [("gz", GZIP_CYPHERTEXT), ("xz", XZ_CYPHERTEXT), ("bz2", BZ2_CYPHERTEXT)],
)
def test_open_trace_inflates_compressed_text(tmp_path, suffix, payload):
    path = tmp_path / f"text.{suffix}"
    path.write_bytes(payload)
    with open_trace(str(path)) as stream:
        inflated = stream.read(len(PLAINTEXT))
    assert inflated.decode() == PLAINTEXT


def test_open_trace_plain_file(tmp_path):
    path = tmp_path / "text.trace"
    path.write_bytes(PLAINTEXT.encode())
    with open_trace(str(path)) as stream:
        assert stream.read().decode() == PLAINTEXT


def test_record_sizes():
    assert len(TraceRecord().pack()) == 64
    assert len(CloudsuiteRecord().pack()) == 96


def test_record_round_trip():
    record = TraceRecord(0x401000, 1, 1, (26, 0), (25, 26, 0, 0), (0xBEEF, 0), (0xCAFE, 0, 0, 0))
    assert decode_records(record.pack(), TraceRecord) == [record]


def test_cloudsuite_record_round_trip():
    record = CloudsuiteRecord(0x401000, 1, 0, (1, 2, 3, 4), (5, 6, 7, 8), (9, 10, 11, 12), (13, 14, 15, 16), (3, 4))
    assert decode_records(record.pack(), CloudsuiteRecord) == [record]


def test_pack_rejects_too_many_registers():
    with pytest.raises(ValueError):
        TraceRecord(destination_registers=(1, 2, 3)).pack()


def test_decode_drops_partial_record():
    data = TraceRecord(ip=1).pack() + TraceRecord(ip=2).pack()[:10]
    assert [r.ip for r in decode_records(data, TraceRecord)] == [1]


def test_apply_branch_target_taken():
    branch = Instruction(ip=0x10, is_branch=True, branch_taken=True)
    target = Instruction(ip=0x80)
    assert apply_branch_target(branch, target).branch_target == 0x80


def test_apply_branch_target_not_taken_or_not_branch():
    target = Instruction(ip=0x80)
    assert apply_branch_target(Instruction(ip=0x10, is_branch=True), target).branch_target == 0
    assert apply_branch_target(Instruction(ip=0x10, branch_taken=True), target).branch_target == 0


def test_set_branch_targets_uses_successor():
    instrs = [
        Instruction(ip=0x10, is_branch=True, branch_taken=True),
        Instruction(ip=0x80, is_branch=True, branch_taken=True),
        Instruction(ip=0x90),
    ]
    result = set_branch_targets(instrs)
    assert [i.branch_target for i in result] == [0x80, 0x90, 0]
    assert [i.ip for i in result] == [i.ip for i in instrs]


def test_set_branch_targets_empty():
    assert set_branch_targets([]) == []


def _stream(records):
    return io.BytesIO(b"".join(r.pack() for r in records))


def test_bulk_reader_inflates_records():
    records = [
        TraceRecord(ip=0x100, is_branch=1, branch_taken=1, destination_registers=(26, 0), source_memory=(0xABC, 0, 0, 0)),
        TraceRecord(ip=0x200),
        TraceRecord(ip=0x300),
    ]
    reader = BulkTraceReader(2, _stream(records), TraceRecord)
    first = reader()
    assert first.ip == 0x100
    assert first.cpu == 2
    assert first.branch_target == 0x200
    assert first.destination_registers == (26,)
    assert first.source_memory == (0xABC,)
    assert first.asid == (0xFF, 0xFF)
    assert not reader.eof()
    assert reader().ip == 0x200
    assert reader.eof()


def test_bulk_reader_cloudsuite_keeps_asid():
    reader = BulkTraceReader(0, _stream([CloudsuiteRecord(ip=0x10, asid=(3, 4)), CloudsuiteRecord(ip=0x20)]), CloudsuiteRecord)
    assert reader().asid == (3, 4)


def test_bulk_reader_empty_stream_raises():
    reader = BulkTraceReader(0, io.BytesIO(b""), TraceRecord)
    with pytest.raises(EOFError):
        reader()


def test_bulk_reader_refills_across_batches():
    records = [TraceRecord(ip=0x1000 + n, is_branch=1, branch_taken=1) for n in range(300)]
    reader = BulkTraceReader(0, _stream(records), TraceRecord)
    seen = []
    while not reader.eof():
        seen.append(reader())
    assert [i.ip for i in seen] == [r.ip for r in records[: len(seen)]]
    assert all(i.branch_target == i.ip + 1 for i in seen)
    assert len(seen) == len(records) - 1


def test_repeatable_reader_restarts():
    records = [TraceRecord(ip=0x10), TraceRecord(ip=0x20)]
    reader = RepeatableReader(lambda: BulkTraceReader(0, _stream(records), TraceRecord))
    ips = [reader().ip for _ in range(5)]
    assert set(ips) <= {0x10, 0x20}
    assert reader.eof() is False


def test_trace_reader_assigns_consecutive_ids():
    reader = TraceReader(lambda: Instruction(ip=0x44))
    ids = [reader().instr_id for _ in range(3)]
    assert ids == list(range(ids[0], ids[0] + 3))
    assert reader.eof() is False


def test_get_tracereader_gzip(tmp_path):
    records = [TraceRecord(ip=0x400 + 4 * n) for n in range(5)]
    path = tmp_path / "trace.gz"
    path.write_bytes(gzip.compress(b"".join(r.pack() for r in records)))
    reader = get_tracereader(str(path), 1, False, False)
    seen = []
    while not reader.eof():
        seen.append(reader())
    assert [i.ip for i in seen] == [r.ip for r in records[:-1]]
    assert all(i.cpu == 1 for i in seen)


def test_get_tracereader_repeat_never_ends(tmp_path):
    path = tmp_path / "trace.champsim"
    path.write_bytes(b"".join(TraceRecord(ip=0x10 * (n + 1)).pack() for n in range(3)))
    reader = get_tracereader(str(path), 0, False, True)
    ips = [reader().ip for _ in range(10)]
    assert reader.eof() is False
    assert set(ips) <= {0x10, 0x20, 0x30}