"""
TLS certificates for local relays.

⚠️  Certificates generated here are SELF-SIGNED and intended ONLY for
    interop testing against a local or containerised relay.

    - Algorithm : ECDSA P-256, SHA-256 signature
    - SANs      : localhost, relay, moq-relay, 127.0.0.1, ::1
    - Files     : cert.pem / priv.key (QUIC interop runner convention)

Usage:
    moqt-interop-certs ./certs
"""

import argparse
import ipaddress
import logging
import os
from datetime import datetime, timedelta, timezone
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

logger = logging.getLogger(__name__)

DEFAULT_HOSTNAMES = ("localhost", "relay", "moq-relay")
CERT_FILE = "cert.pem"
KEY_FILE = "priv.key"


def generate_dev_cert(
    cert_path: str,
    key_path: str,
    hostnames=DEFAULT_HOSTNAMES,
    days: int = 365,
) -> None:
    """
    Write a self-signed ECDSA P-256 / SHA-256 certificate and its key.

    The first hostname becomes the CN; all of them, plus the loopback
    addresses, go into the subjectAltName.
    """
    private_key = ec.generate_private_key(ec.SECP256R1())

    subject = issuer = x509.Name(
        [
            x509.NameAttribute(NameOID.COMMON_NAME, hostnames[0]),
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, "MoQT Interop (TEST ONLY)"),
        ]
    )

    san_entries: list[x509.GeneralName] = [x509.DNSName(h) for h in hostnames]
    san_entries.append(x509.IPAddress(ipaddress.IPv4Address("127.0.0.1")))
    san_entries.append(x509.IPAddress(ipaddress.IPv6Address("::1")))

    now = datetime.now(timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(private_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + timedelta(days=days))
        .add_extension(x509.SubjectAlternativeName(san_entries), critical=False)
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .sign(private_key, hashes.SHA256())
    )

    Path(cert_path).parent.mkdir(parents=True, exist_ok=True)
    Path(key_path).parent.mkdir(parents=True, exist_ok=True)

    with open(cert_path, "wb") as f:
        f.write(cert.public_bytes(serialization.Encoding.PEM))

    with open(key_path, "wb") as f:
        f.write(
            private_key.private_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PrivateFormat.TraditionalOpenSSL,
                encryption_algorithm=serialization.NoEncryption(),
            )
        )

    logger.warning(
        "Self-signed certificate written to %s -- for interop testing only.", cert_path,
    )


def ensure_dev_certs(cert_dir: str = "certs") -> tuple[str, str]:
    """
    Return (cert_path, key_path) inside ``cert_dir``, generating the files if
    they don't exist yet.
    """
    cert_path = os.path.join(cert_dir, CERT_FILE)
    key_path = os.path.join(cert_dir, KEY_FILE)
    if not (os.path.exists(cert_path) and os.path.exists(key_path)):
        logger.info("Generating dev TLS certificate in %s", cert_dir)
        generate_dev_cert(cert_path, key_path)
    return cert_path, key_path


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        prog="moqt-interop-certs",
        description="Generate a self-signed TLS certificate for a local MoQT relay",
    )
    parser.add_argument("cert_dir", nargs="?", default="certs", help="Output directory (default: ./certs)")
    parser.add_argument("--force", action="store_true", help="Overwrite existing files")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    if args.force:
        cert_path = os.path.join(args.cert_dir, CERT_FILE)
        key_path = os.path.join(args.cert_dir, KEY_FILE)
        generate_dev_cert(cert_path, key_path)
    else:
        cert_path, key_path = ensure_dev_certs(args.cert_dir)

    print(f"Certificates in {args.cert_dir}:")
    print(f"  - {cert_path}")
    print(f"  - {key_path}")
    return 0
