#!/usr/bin/env python3
"""Test startup configuration, the listener and the CLI"""

import os
import socket
import threading
import time

import pytest
import requests

import app as server_app
from app import announce, create_server, get_local_ips, main
from config import ServerConfig, StartupConfigError, build_config, make_ssl_context, __version__


@pytest.fixture
def live_server(tmp_path):
    """Threaded server on an ephemeral port"""
    config = build_config(port=0, folder="files", host="127.0.0.1", qr=False, base_dir=tmp_path)
    server = create_server(config)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield f"http://127.0.0.1:{server.server_port}", config
    server.shutdown()
    server.server_close()


# ─── Configuration ────────────────────────────────────────────────

def test_build_config_creates_upload_folder(tmp_path):
    config = build_config(folder="incoming", base_dir=tmp_path)
    assert config.upload_root == str((tmp_path / "incoming").resolve())
    assert os.path.isdir(config.upload_root)
    assert config.url_prefix == "/incoming"
    assert config.port == 5000
    assert config.host == "0.0.0.0"
    assert config.scheme == "http"


def test_config_is_immutable(tmp_path):
    config = build_config(base_dir=tmp_path)
    with pytest.raises(AttributeError):
        config.port = 8080


def test_tls_without_key_fails(tmp_path):
    cert = tmp_path / "cert.pem"
    cert.write_text("cert")
    with pytest.raises(StartupConfigError, match="key"):
        build_config(tls=True, cert_file=str(cert), base_dir=tmp_path)


def test_tls_with_missing_key_file_fails(tmp_path):
    cert = tmp_path / "cert.pem"
    cert.write_text("cert")
    with pytest.raises(StartupConfigError, match="not found"):
        build_config(tls=True, cert_file=str(cert), key_file=str(tmp_path / "missing.pem"),
                     base_dir=tmp_path)


def test_invalid_tls_material_fails_before_bind(tmp_path):
    cert = tmp_path / "cert.pem"
    key = tmp_path / "key.pem"
    cert.write_text("not a certificate")
    key.write_text("not a key")
    config = build_config(tls=True, cert_file=str(cert), key_file=str(key), base_dir=tmp_path)
    assert config.scheme == "https"
    with pytest.raises(StartupConfigError):
        make_ssl_context(config)


def test_cert_without_tls_flag_is_plaintext(tmp_path):
    config = build_config(cert_file="cert.pem", key_file="key.pem", base_dir=tmp_path)
    assert not config.tls
    assert config.cert_file is None
    assert make_ssl_context(config) is None


def test_upload_folder_not_creatable(tmp_path):
    (tmp_path / "taken").write_text("a file, not a folder")
    with pytest.raises(StartupConfigError):
        build_config(folder="taken", base_dir=tmp_path)


@pytest.mark.parametrize("folder", ["", "/", ".", ".."])
def test_invalid_folder(tmp_path, folder):
    with pytest.raises(StartupConfigError):
        build_config(folder=folder, base_dir=tmp_path)


# ─── CLI ──────────────────────────────────────────────────────────

def test_version_exits_zero(capsys):
    with pytest.raises(SystemExit) as excinfo:
        main(["--version"])
    assert excinfo.value.code == 0
    assert __version__ in capsys.readouterr().out


def test_help_exits_zero(capsys):
    with pytest.raises(SystemExit) as excinfo:
        main(["-h"])
    assert excinfo.value.code == 0
    out = capsys.readouterr().out
    assert "--qr-disable" in out
    assert "--folder" in out


def test_tls_missing_key_exits_nonzero(tmp_path, monkeypatch):
    """No silent fallback to plain HTTP, and nothing is served"""
    monkeypatch.chdir(tmp_path)
    cert = tmp_path / "cert.pem"
    cert.write_text("cert")

    def fail(config):
        raise AssertionError("server must not start")

    monkeypatch.setattr(server_app, "start_server", fail)
    assert main(["--tls", "--cert", str(cert), "-f", "up"]) == 1


def test_main_starts_plaintext_server(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    started = []
    monkeypatch.setattr(server_app, "start_server", started.append)

    assert main(["-p", "8123", "-f", "shared", "-q"]) == 0

    config = started[0]
    assert config.port == 8123
    assert config.folder == "shared"
    assert not config.qr
    assert not config.tls
    assert os.path.isdir(tmp_path / "shared")


# ─── Address announcement ─────────────────────────────────────────

@pytest.fixture
def fake_interfaces(monkeypatch):
    addresses = {
        "lo": {server_app.netifaces.AF_INET: [{"addr": "127.0.0.1"}]},
        "eth0": {server_app.netifaces.AF_INET: [{"addr": "192.168.1.20"}]},
        "wlan0": {server_app.netifaces.AF_INET: [{"addr": "10.0.0.5"}, {"addr": "169.254.3.3"}]},
        "tun0": {},
    }
    monkeypatch.setattr(server_app.netifaces, "interfaces", lambda: list(addresses))
    monkeypatch.setattr(server_app.netifaces, "ifaddresses", lambda name: addresses[name])


def test_get_local_ips_skips_loopback(fake_interfaces):
    assert get_local_ips() == ["192.168.1.20", "10.0.0.5"]


def test_announce_prints_urls(fake_interfaces, tmp_path, capsys):
    config = ServerConfig(upload_root=str(tmp_path), qr=False)
    announce(config, 5000)
    out = capsys.readouterr().out
    assert "\thttp://192.168.1.20:5000" in out
    assert "\thttp://10.0.0.5:5000" in out
    assert "127.0.0.1" not in out


def test_announce_with_qr_codes(fake_interfaces, tmp_path, monkeypatch, capsys):
    printed = []
    monkeypatch.setattr(server_app, "print_qr", printed.append)
    announce(ServerConfig(upload_root=str(tmp_path)), 5000)
    assert printed == ["http://192.168.1.20:5000", "http://10.0.0.5:5000"]


# ─── Live server ──────────────────────────────────────────────────

def test_live_upload_and_listing(live_server):
    base_url, config = live_server

    response = requests.post(f"{base_url}/", files={"upload": ("one.txt", b"first")}, timeout=5)
    assert response.status_code == 200
    assert response.headers["Access-Control-Allow-Origin"] == "*"

    response = requests.post(f"{base_url}/upload", data={"file": "two.txt"},
                             files={"upload": ("ignored.jpg", b"second")},
                             allow_redirects=False, timeout=5)
    assert response.status_code == 302

    listing = requests.get(f"{base_url}/files", headers={"Accept": "application/json"}, timeout=5)
    assert [f["name"] for f in listing.json()["files"]] == ["one.txt", "two.txt"]

    fetched = requests.get(f"{base_url}/files/two.txt", timeout=5)
    assert fetched.content == b"second"


def test_live_bad_request_keeps_serving(live_server):
    base_url, _ = live_server
    response = requests.post(f"{base_url}/upload", files={"note": (None, "text only")}, timeout=5)
    assert response.status_code == 400
    assert response.headers["Access-Control-Allow-Headers"] == "Origin, X-Requested-With, Content-Type, Accept"

    assert requests.get(f"{base_url}/", timeout=5).status_code == 200


def test_slow_upload_does_not_block_other_requests(live_server):
    """A stalled upload leaves listing available and never lands under its name"""
    base_url, config = live_server
    port = int(base_url.rsplit(":", 1)[1])
    boundary = "stalled"
    head = (
        f"--{boundary}\r\n"
        'Content-Disposition: form-data; name="upload"; filename="stalled.bin"\r\n'
        "Content-Type: application/octet-stream\r\n\r\n"
    ).encode()

    conn = socket.create_connection(("127.0.0.1", port), timeout=5)
    try:
        conn.sendall(
            b"POST / HTTP/1.1\r\n"
            b"Host: 127.0.0.1\r\n"
            b"Content-Type: multipart/form-data; boundary=" + boundary.encode() + b"\r\n"
            b"Content-Length: 1000000\r\n\r\n" + head + b"x" * 1000
        )
        time.sleep(0.2)

        response = requests.get(f"{base_url}/files", timeout=5)
        assert response.status_code == 200
        assert "stalled.bin" not in response.text
    finally:
        conn.close()

    time.sleep(0.2)
    assert "stalled.bin" not in os.listdir(config.upload_root)
