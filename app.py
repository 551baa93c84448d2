#!/usr/bin/env python3
"""
Upload Server - exchange files with devices on the local network
Browse the upload folder, upload from a browser form or with a plain POST
"""

import os
import sys
import stat
import socket
import logging
import argparse
import ipaddress
from datetime import datetime
from urllib.parse import quote
from flask import Flask, render_template, request, jsonify, redirect, send_file, abort, Response
from flask_cors import CORS
from werkzeug.exceptions import BadRequest
from werkzeug.security import safe_join
from werkzeug.serving import make_server
import qrcode
import netifaces

from config import (__version__, DEFAULT_PORT, DEFAULT_FOLDER, StartupConfigError,
                    build_config, make_ssl_context)
from storage import Rejected, StorageIOError, resolve_target, store_files

logger = logging.getLogger(__name__)

CORS_ALLOW_HEADERS = ['Origin', 'X-Requested-With', 'Content-Type', 'Accept']
LISTING_MIMETYPES = ['text/html', 'application/json', 'text/plain']

# Form field that overrides the stored name of every uploaded part
TARGET_NAME_FIELD = 'file'


class UploadError(Exception):
    """An upload request that is answered with an error status."""

    def __init__(self, message, status=400):
        super().__init__(message)
        self.message = message
        self.status = status


def log_stored(path):
    logger.info("File uploaded: %s", path)


def format_size(size):
    """Human readable size for the listing page"""
    for unit in ('B', 'KB', 'MB', 'GB'):
        if size < 1024 or unit == 'GB':
            return f"{size:.0f} {unit}" if unit == 'B' else f"{size:.1f} {unit}"
        size /= 1024


def save_uploads(config):
    """Store every file part of the current request, return the stored paths."""
    if request.mimetype != 'multipart/form-data':
        raise UploadError("Expected a multipart/form-data body")

    # An unfilled file input still sends a part, with an empty filename
    parts = [f for _, f in request.files.items(multi=True) if f.filename]
    if not parts:
        raise UploadError("No file part")

    declared = request.form.get(TARGET_NAME_FIELD, '')
    targets = [resolve_target(config.upload_root, declared, part.filename) for part in parts]
    for target in targets:
        if isinstance(target, Rejected):
            logger.warning("Rejected upload %r: %s", target.filename, target.reason)
            raise UploadError(f"Invalid file name {target.filename!r}: {target.reason}", 403)
        if os.path.isdir(target.path):
            raise UploadError(f"A folder named {target.filename!r} already exists", 409)

    try:
        return store_files([(part.stream, target) for part, target in zip(parts, targets)])
    except StorageIOError as e:
        logger.error("Upload failed: %s", e)
        raise UploadError(str(e), 500)


def list_entries(directory):
    """Directories first, then files, hidden names skipped"""
    files = []
    directories = []

    for item in os.listdir(directory):
        if item.startswith('.'):
            continue
        try:
            stats = os.stat(os.path.join(directory, item))
        except OSError:
            # Vanished or unreadable since listdir
            continue
        is_dir = stat.S_ISDIR(stats.st_mode)
        entry = {
            "name": item,
            "size": None if is_dir else stats.st_size,
            "modified": stats.st_mtime,
            "is_dir": is_dir,
        }
        (directories if is_dir else files).append(entry)

    directories.sort(key=lambda x: x['name'].lower())
    files.sort(key=lambda x: x['name'].lower())
    return directories, files


def create_app(config, on_stored=None):
    """Build the Flask app for one immutable ServerConfig.

    ``on_stored(path)`` is called for every file written by an upload;
    by default it logs the path.
    """
    app = Flask(__name__, template_folder='templates')
    if config.max_content_length:
        app.config['MAX_CONTENT_LENGTH'] = config.max_content_length
    on_stored = on_stored or log_stored

    # Registered before CORS() so it runs after flask-cors on every response
    @app.after_request
    def cors_headers(response):
        response.headers['Access-Control-Allow-Origin'] = '*'
        response.headers['Access-Control-Allow-Headers'] = ', '.join(CORS_ALLOW_HEADERS)
        return response

    CORS(app, send_wildcard=True, allow_headers=CORS_ALLOW_HEADERS)

    @app.errorhandler(UploadError)
    def upload_error(error):
        return jsonify({"error": error.message}), error.status

    @app.errorhandler(BadRequest)
    def bad_request(error):
        return jsonify({"error": error.description}), 400

    @app.errorhandler(413)
    def request_entity_too_large(error):
        limit = config.max_content_length // (1024 * 1024) if config.max_content_length else 0
        return jsonify({"error": f"File too large. Maximum allowed size is {limit}MB."}), 413

    @app.route('/')
    def index():
        return render_template('index.html', folder=config.folder,
                               listing_url=config.url_prefix, version=__version__)

    @app.route('/', methods=['POST'])
    def upload():
        for path in save_uploads(config):
            on_stored(path)
        return '', 200

    @app.route('/upload', methods=['POST'])
    def upload_form():
        for path in save_uploads(config):
            on_stored(path)
        return redirect(config.url_prefix)

    def browse(subpath=''):
        root = config.upload_root
        target = safe_join(root, subpath) if subpath else root
        if target is None:
            logger.warning("Refused path outside upload folder: %r", subpath)
            abort(403)

        rel = os.path.relpath(target, root)
        parts = [] if rel == os.curdir else rel.split(os.sep)
        if any(p.startswith('.') for p in parts):
            abort(404)

        if os.path.isdir(target):
            return render_listing(parts, target)
        if os.path.isfile(target):
            return send_file(target, conditional=True)
        abort(404)

    def render_listing(parts, directory):
        try:
            directories, files = list_entries(directory)
        except OSError as e:
            logger.error("Cannot list %s: %s", directory, e)
            abort(404)

        current = '/'.join([config.url_prefix] + [quote(p) for p in parts])
        best = request.accept_mimetypes.best_match(LISTING_MIMETYPES, default='text/html')

        if best == 'application/json':
            return jsonify({
                "current_dir": current,
                "directories": directories,
                "files": files,
            })
        if best == 'text/plain':
            names = [d['name'] + '/' for d in directories] + [f['name'] for f in files]
            return Response(''.join(name + '\n' for name in names), mimetype='text/plain')

        entries = []
        for entry in directories + files:
            entries.append(dict(
                entry,
                href=f"{current}/{quote(entry['name'])}",
                size_text='' if entry['is_dir'] else format_size(entry['size']),
                modified_text=datetime.fromtimestamp(entry['modified']).strftime('%Y-%m-%d %H:%M'),
            ))
        parent = '/'.join([config.url_prefix] + [quote(p) for p in parts[:-1]]) if parts else None
        return render_template('listing.html', title='/'.join([config.folder] + parts),
                               entries=entries, parent=parent, home='/')

    prefix = config.url_prefix
    app.add_url_rule(prefix, 'browse', browse, strict_slashes=False)
    app.add_url_rule(f'{prefix}/<path:subpath>', 'browse', browse)

    return app


def get_local_ips():
    """IPv4 addresses other devices can reach this machine on"""
    ips = []
    for interface in netifaces.interfaces():
        addrs = netifaces.ifaddresses(interface)
        for addr in addrs.get(netifaces.AF_INET, []):
            try:
                ip = ipaddress.ip_address(addr.get('addr', ''))
            except ValueError:
                continue
            if ip.is_loopback or ip.is_link_local:
                continue
            if str(ip) not in ips:
                ips.append(str(ip))

    if not ips:
        # Fallback: address of the interface holding the default route
        try:
            with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
                s.connect(("8.8.8.8", 80))
                ip = s.getsockname()[0]
            if not ipaddress.ip_address(ip).is_loopback:
                ips.append(ip)
        except OSError:
            pass
    return ips


def print_qr(url):
    """Print a QR code of the url to the terminal"""
    qr = qrcode.QRCode(
        version=1,
        error_correction=qrcode.constants.ERROR_CORRECT_L,
        border=2,
    )
    qr.add_data(url)
    qr.make(fit=True)
    qr.print_ascii()


def announce(config, port):
    """Print every URL the server can be reached on, with QR codes unless disabled"""
    logger.info("Server started on:")
    for ip in get_local_ips():
        url = f"{config.scheme}://{ip}:{port}"
        print(f"\t{url}")
        if config.qr:
            print_qr(url)
    print("Hit CTRL-C to stop the server")


def create_server(config, on_stored=None):
    """Load TLS material, then bind a threaded listener for the app.

    Nothing is bound when the certificate or key cannot be loaded.
    """
    ssl_context = make_ssl_context(config)
    app = create_app(config, on_stored)
    return make_server(config.host, config.port, app, threaded=True, ssl_context=ssl_context)


def start_server(config):
    """Serve until interrupted"""
    server = create_server(config)
    if config.tls:
        logger.info("Server started on https://%s:%s", config.host, server.server_port)
    else:
        announce(config, server.server_port)

    try:
        server.serve_forever()
    except KeyboardInterrupt:
        print("\nShutting down server...")
    finally:
        server.server_close()


def build_parser():
    parser = argparse.ArgumentParser(prog='upload-server',
                                     description=f'File upload server v{__version__}')
    parser.add_argument('-p', '--port', type=int, default=DEFAULT_PORT,
                        help=f'Port number (default: {DEFAULT_PORT})')
    parser.add_argument('-q', '--qr-disable', action='store_true',
                        help='Disable QR terminal output')
    parser.add_argument('-f', '--folder', default=DEFAULT_FOLDER,
                        help=f'Folder to upload files (default: {DEFAULT_FOLDER})')
    parser.add_argument('-S', '--tls', action='store_true', help='Enable TLS / HTTPS')
    parser.add_argument('-C', '--cert', help='Server certificate file')
    parser.add_argument('-K', '--key', help='Private key file')
    parser.add_argument('-v', '--version', action='version', version=__version__,
                        help='Print the current version')
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)

    logging.basicConfig(level=logging.INFO, format='[%(asctime)s] - %(message)s')
    logger.info("File upload server v%s", __version__)

    try:
        config = build_config(
            port=args.port,
            folder=args.folder,
            tls=args.tls,
            cert_file=args.cert,
            key_file=args.key,
            qr=not args.qr_disable,
        )
        logger.info("Serving files from folder: %s", config.upload_root)
        start_server(config)
    except StartupConfigError as e:
        logger.error("%s", e)
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
