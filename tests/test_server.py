import asyncio

from ftudp.protocol import Status, parse_response
from transport.fragment import fragment
from transport.header import make_packet

from helpers import CLIENT, build

OTHER = ("127.0.0.1", 40001)


def login(server, endpoint, user="alice", password="secret", addr=CLIENT):
    server.on_datagram(build(1, "LOGIN", f"{user} {password}"), addr)
    return endpoint.take()[-1]


def status_of(packet):
    return parse_response(packet.payload)


def test_login_success(server, endpoint):
    resp = login(server, endpoint)
    assert resp.type == "LOGIN_RESPONSE"
    assert resp.id == 1
    assert resp.payload == b"SUCCESS"
    session = server.sessions.require(CLIENT)
    assert session.username == "alice"
    assert session.current_dir == "/"


def test_login_wrong_password(server, endpoint):
    resp = login(server, endpoint, password="nope")
    assert resp.payload == b"WRONG_PASSWORD"
    assert len(server.sessions) == 0


def test_login_unknown_user(server, endpoint):
    assert login(server, endpoint, user="mallory").payload == b"USER_NOT_FOUND"


def test_login_malformed(server, endpoint):
    server.on_datagram(build(4, "LOGIN", "alice"), CLIENT)
    resp = endpoint.take()[-1]
    assert resp.type == "LOGIN_RESPONSE"
    assert resp.id == 4
    assert status_of(resp)[0] is Status.ERROR


def test_commands_require_login(server, endpoint):
    for ptype in ("LS", "CD", "MKDIR", "PUT", "GET", "PUT_DATA", "ACK"):
        server.on_datagram(build(9, ptype, "x"), CLIENT)
    replies = endpoint.take()
    assert [r.type for r in replies] == ["ERROR"] * 7
    assert b"not authenticated" in replies[0].payload
    assert replies[0].id == 9


def test_session_is_per_endpoint(server, endpoint):
    login(server, endpoint)
    server.on_datagram(build(2, "LS"), OTHER)
    assert endpoint.take()[-1].type == "ERROR"


def test_garbage_gets_error_and_server_survives(server, endpoint):
    server.on_datagram(b"\x00\x01", CLIENT)
    server.on_datagram(make_packet(5, "LS", b"abcdef")[:-3], CLIENT)
    server.on_datagram(build(6, "FROBNICATE"), CLIENT)
    replies = endpoint.take()
    assert [(r.type, r.id) for r in replies] == [("ERROR", 0), ("ERROR", 0), ("ERROR", 6)]
    assert login(server, endpoint).payload == b"SUCCESS"


def test_ls_lists_current_directory(server, endpoint):
    (server.root / "docs").mkdir()
    (server.root / "a.txt").write_bytes(b"hello")
    login(server, endpoint)
    server.on_datagram(build(2, "LS"), CLIENT)
    resp = endpoint.take()[-1]
    assert resp.type == "LS_RESPONSE"
    assert resp.payload == b"SUCCESS\nFILE a.txt 5\nDIR docs 0"


def test_cd_into_subdirectory_and_back(server, endpoint):
    (server.root / "docs" / "old").mkdir(parents=True)
    login(server, endpoint)
    server.on_datagram(build(2, "CD", "docs"), CLIENT)
    server.on_datagram(build(3, "CD", "old"), CLIENT)
    server.on_datagram(build(4, "CD", ".."), CLIENT)
    replies = endpoint.take()
    assert [r.payload for r in replies] == [b"SUCCESS /docs", b"SUCCESS /docs/old", b"SUCCESS /docs"]


def test_cd_missing_directory(server, endpoint):
    (server.root / "file.txt").write_bytes(b"x")
    login(server, endpoint)
    server.on_datagram(build(2, "CD", "nowhere"), CLIENT)
    server.on_datagram(build(3, "CD", "file.txt"), CLIENT)
    assert [r.payload for r in endpoint.take()] == [b"DIRECTORY_NOT_FOUND"] * 2
    assert server.sessions.require(CLIENT).current_dir == "/"


def test_cd_traversal_never_leaves_root(server, endpoint):
    login(server, endpoint)
    for i, name in enumerate(["..", "../..", "../../../etc", "/../../..", "..\\.."]):
        server.on_datagram(build(10 + i, "CD", name), CLIENT)
    replies = endpoint.take()
    assert replies[0].payload == b"SUCCESS /"
    assert replies[1].payload == b"SUCCESS /"
    assert replies[2].payload == b"DIRECTORY_NOT_FOUND"
    assert replies[3].payload == b"SUCCESS /"
    assert replies[4].payload == b"SUCCESS /"
    assert server.sessions.require(CLIENT).current_dir == "/"


def test_mkdir_and_rmdir(server, endpoint):
    login(server, endpoint)
    server.on_datagram(build(2, "MKDIR", "new"), CLIENT)
    server.on_datagram(build(3, "MKDIR", "new"), CLIENT)
    assert (server.root / "new").is_dir()
    (server.root / "new" / "f").write_bytes(b"1")
    server.on_datagram(build(4, "RMDIR", "new"), CLIENT)
    (server.root / "new" / "f").unlink()
    server.on_datagram(build(5, "RMDIR", "new"), CLIENT)
    server.on_datagram(build(6, "RMDIR", "new"), CLIENT)
    replies = endpoint.take()
    assert [(r.type, r.payload) for r in replies] == [
        ("MKDIR_RESPONSE", b"SUCCESS"),
        ("MKDIR_RESPONSE", b"ALREADY_EXISTS"),
        ("RMDIR_RESPONSE", b"NOT_EMPTY"),
        ("RMDIR_RESPONSE", b"SUCCESS"),
        ("RMDIR_RESPONSE", b"DIRECTORY_NOT_FOUND"),
    ]
    assert not (server.root / "new").exists()


def test_rmdir_on_file_and_root(server, endpoint):
    (server.root / "f.txt").write_bytes(b"x")
    login(server, endpoint)
    server.on_datagram(build(2, "RMDIR", "f.txt"), CLIENT)
    server.on_datagram(build(3, "RMDIR", ".."), CLIENT)
    file_resp, root_resp = endpoint.take()
    assert status_of(file_resp)[0] is Status.ERROR
    assert root_resp.payload == b"PERMISSION_DENIED"
    assert (server.root / "f.txt").exists()


def test_mkdir_missing_parent(server, endpoint):
    login(server, endpoint)
    server.on_datagram(build(2, "MKDIR", "a/b"), CLIENT)
    assert endpoint.take()[-1].payload == b"DIRECTORY_NOT_FOUND"


def test_upload_2500_bytes(server, endpoint):
    data = bytes(range(250)) * 10

    async def scenario():
        login(server, endpoint)
        server.on_datagram(build(2, "PUT", "blob.bin 3"), CLIENT)
        init = endpoint.take()[-1]
        assert init.type == "PUT_RESPONSE" and init.id == 2
        status, transfer_id = status_of(init)
        assert status is Status.SUCCESS and transfer_id.startswith("put_")
        assert len(server.transfers) == 1

        frags = fragment(data, "PUT_DATA")
        assert [len(f.data) for f in frags] == [992, 992, 516]
        for f in reversed(frags):
            server.on_datagram(f.to_bytes(), CLIENT)
        return endpoint.take()

    replies = asyncio.run(scenario())
    assert [(r.type, r.id) for r in replies] == [("ACK", 3), ("ACK", 2), ("ACK", 1), ("PUT_RESPONSE", 2)]
    assert replies[-1].payload == b"SUCCESS 2500"
    assert (server.root / "blob.bin").read_bytes() == data
    assert len(server.transfers) == 0


def test_upload_into_current_directory(server, endpoint):
    (server.root / "docs").mkdir()

    async def scenario():
        login(server, endpoint)
        server.on_datagram(build(2, "CD", "docs"), CLIENT)
        server.on_datagram(build(3, "PUT", "note.txt 1"), CLIENT)
        server.on_datagram(fragment(b"hi there", "PUT_DATA")[0].to_bytes(), CLIENT)
        return endpoint.take()

    replies = asyncio.run(scenario())
    assert replies[-1].payload == b"SUCCESS 8"
    assert (server.root / "docs" / "note.txt").read_bytes() == b"hi there"


def test_upload_empty_file_finishes_immediately(server, endpoint):
    async def scenario():
        login(server, endpoint)
        server.on_datagram(build(2, "PUT", "empty.txt 0"), CLIENT)
        return endpoint.take()

    init, final = asyncio.run(scenario())
    assert status_of(init)[0] is Status.SUCCESS
    assert final.id == 2 and final.payload == b"SUCCESS 0"
    assert (server.root / "empty.txt").read_bytes() == b""


def test_upload_requires_fragment_count(server, endpoint):
    login(server, endpoint)
    server.on_datagram(build(2, "PUT", "blob.bin"), CLIENT)
    server.on_datagram(build(3, "PUT", "blob.bin many"), CLIENT)
    replies = endpoint.take()
    assert all(status_of(r)[0] is Status.ERROR for r in replies)
    assert len(server.transfers) == 0


def test_upload_cannot_escape_root(server, endpoint):
    async def scenario():
        login(server, endpoint)
        server.on_datagram(build(2, "PUT", "../../evil.txt 1"), CLIENT)
        server.on_datagram(fragment(b"evil", "PUT_DATA")[0].to_bytes(), CLIENT)
        return endpoint.take()

    asyncio.run(scenario())
    assert (server.root / "evil.txt").read_bytes() == b"evil"
    assert not (server.root.parent / "evil.txt").exists()


def test_corrupt_fragment_is_nacked(server, endpoint):
    async def scenario():
        login(server, endpoint)
        server.on_datagram(build(2, "PUT", "f.bin 1"), CLIENT)
        endpoint.take()
        frag = fragment(b"payload", "PUT_DATA")[0]
        server.on_datagram(make_packet(1, "PUT_DATA", b"paylOad", frag.checksum), CLIENT)
        nack = endpoint.take()
        server.on_datagram(frag.to_bytes(), CLIENT)
        return nack, endpoint.take()

    nack, done = asyncio.run(scenario())
    assert [(r.type, r.id) for r in nack] == [("NACK", 1)]
    assert done[-1].payload == b"SUCCESS 7"
    assert server.metrics.checksum_errors == 1


def test_stalled_upload_is_aborted(server, endpoint):
    async def scenario():
        login(server, endpoint)
        server.on_datagram(build(2, "PUT", "big.bin 3"), CLIENT)
        server.on_datagram(fragment(b"x" * 2500, "PUT_DATA")[0].to_bytes(), CLIENT)
        endpoint.take()
        await asyncio.sleep(server.config.transfer_idle + 0.2)
        return endpoint.take()

    replies = asyncio.run(scenario())
    assert [(r.type, r.id) for r in replies] == [("PUT_RESPONSE", 2)]
    assert b"stalled" in replies[0].payload
    assert len(server.transfers) == 0
    assert not (server.root / "big.bin").exists()


def test_put_data_without_upload(server, endpoint):
    login(server, endpoint)
    server.on_datagram(fragment(b"x", "PUT_DATA")[0].to_bytes(), CLIENT)
    resp = endpoint.take()[-1]
    assert (resp.type, resp.id) == ("ERROR", 0)


def test_get_missing_file(server, endpoint):
    login(server, endpoint)
    server.on_datagram(build(2, "GET", "nope.txt"), CLIENT)
    resp = endpoint.take()[-1]
    assert (resp.type, resp.id, resp.payload) == ("GET_RESPONSE", 2, b"FILE_NOT_FOUND")
    assert len(server.transfers) == 0


def test_get_streams_fragments_until_acked(server, endpoint):
    data = b"0123456789" * 200
    (server.root / "f.bin").write_bytes(data)

    async def scenario():
        login(server, endpoint)
        server.on_datagram(build(2, "GET", "f.bin"), CLIENT)
        await asyncio.sleep(0.05)
        sent = endpoint.take()
        assert len(server.transfers) == 1
        for p in sent[1:]:
            server.on_datagram(build(p.id, "ACK"), CLIENT)
        return sent

    sent = asyncio.run(scenario())
    assert (sent[0].type, sent[0].payload) == ("GET_RESPONSE", b"SUCCESS 3")
    assert [(p.type, p.id) for p in sent[1:]] == [("GET_DATA", 1), ("GET_DATA", 2), ("GET_DATA", 3)]
    assert b"".join(p.payload for p in sent[1:]) == data
    assert all(p.verify() for p in sent[1:])
    assert len(server.transfers) == 0


def test_get_nack_resends_until_retry_limit(server, endpoint):
    (server.root / "f.bin").write_bytes(b"abc")

    async def scenario():
        login(server, endpoint)
        server.on_datagram(build(2, "GET", "f.bin"), CLIENT)
        await asyncio.sleep(0.05)
        endpoint.take()
        resent = []
        for _ in range(server.config.max_retries):
            server.on_datagram(build(1, "NACK"), CLIENT)
            resent.extend(endpoint.take())
        server.on_datagram(build(1, "NACK"), CLIENT)
        return resent, endpoint.take()

    resent, final = asyncio.run(scenario())
    assert [(p.type, p.id, p.payload) for p in resent] == [("GET_DATA", 1, b"abc")] * 3
    assert [(p.type, p.id) for p in final] == [("ERROR", 0)]
    assert server.metrics.retransmissions == 3
    assert len(server.transfers) == 0


def test_get_empty_file(server, endpoint):
    (server.root / "empty").write_bytes(b"")
    login(server, endpoint)
    server.on_datagram(build(2, "GET", "empty"), CLIENT)
    assert endpoint.take()[-1].payload == b"SUCCESS 0"
    assert len(server.transfers) == 0


def test_relogin_drops_transfers(server, endpoint):
    async def scenario():
        login(server, endpoint)
        server.on_datagram(build(2, "PUT", "f.bin 2"), CLIENT)
        assert len(server.transfers) == 1
        login(server, endpoint)
        return len(server.transfers)

    assert asyncio.run(scenario()) == 0
