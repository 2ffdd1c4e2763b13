import json

from passkey_server.audit import GENESIS_HASH, AuditLog, build_common, verify_log_chain


def test_chain_links_events(tmp_path):
    log = AuditLog(tmp_path)
    h1 = log.append(build_common(event="registration", result="approved", username="alice"))
    h2 = log.append(build_common(event="sign_out", result="approved"))

    lines = [json.loads(l) for l in log.log_path.read_text().splitlines()]
    assert lines[0]["prev_hash"] == GENESIS_HASH
    assert lines[0]["hash"] == h1
    assert lines[1]["prev_hash"] == h1
    assert lines[1]["hash"] == h2
    assert log.verify_chain()


def test_caller_cannot_inject_chain_fields(tmp_path):
    log = AuditLog(tmp_path)
    log.append({"event": "x", "result": "approved", "hash": "f" * 64, "prev_hash": "e" * 64})
    line = json.loads(log.log_path.read_text())
    assert line["prev_hash"] == GENESIS_HASH
    assert log.verify_chain()


def test_tampering_is_detected(tmp_path):
    log = AuditLog(tmp_path)
    log.append(build_common(event="authentication", result="denied", reason="bad_csrf"))
    log.append(build_common(event="authentication", result="approved", username="alice"))

    lines = log.log_path.read_text().splitlines()
    lines[0] = lines[0].replace("denied", "approved")
    log.log_path.write_text("\n".join(lines) + "\n")
    assert not log.verify_chain()


def test_deleted_line_is_detected(tmp_path):
    log = AuditLog(tmp_path)
    for i in range(3):
        log.append(build_common(event="sign_out", result="approved", username=f"user{i}"))

    lines = log.log_path.read_text().splitlines()
    log.log_path.write_text("\n".join([lines[0], lines[2]]) + "\n")
    assert not verify_log_chain(log.log_path)


def test_missing_log_verifies(tmp_path):
    assert verify_log_chain(tmp_path / "nothing.jsonl")


def test_disabled_log_writes_nothing(tmp_path):
    log = AuditLog(tmp_path / "off", enabled=False)
    assert log.append(build_common(event="sign_out", result="approved")) is None
    assert not log.log_path.exists()


def test_build_common_encodes_bytes_and_truncates():
    event = build_common(
        event="registration",
        result="approved",
        user_id=b"\xfb\xff",
        credential_id=b"\x00",
        user_agent="x" * 500,
    )
    assert event["user_id"] == "-_8"
    assert event["credential_id"] == "AA"
    assert len(event["credential_sha3_256"]) == 64
    assert len(event["user_agent"]) == 200
    assert "reason" not in event


def test_non_object_line_breaks_chain(tmp_path):
    log = AuditLog(tmp_path)
    log.append(build_common(event="sign_out", result="approved"))
    with open(log.log_path, "a", encoding="utf-8") as f:
        f.write("[1, 2]\n")

    assert verify_log_chain(log.log_path) is False
