from __future__ import annotations

import os

import uvicorn

from injector.src.main import create_app
from shared.src.settings import env_int

DEFAULT_CERT_DIR = "/tmp/k8s-webhook-server/serving-certs"  # noqa: S108


def main() -> None:
    """Injector entrypoint: serve the admission webhook over HTTPS.

    TLS material is mounted by the webhook certificate issuer; without
    ``TLS_CERT_FILE`` the server falls back to plain HTTP for local runs.
    """
    port = env_int("WEBHOOK_PORT", 9443, minimum=1, maximum=65535)
    cert_file = os.getenv("TLS_CERT_FILE", f"{DEFAULT_CERT_DIR}/tls.crt")
    key_file = os.getenv("TLS_KEY_FILE", f"{DEFAULT_CERT_DIR}/tls.key")
    tls_enabled = os.path.exists(cert_file) and os.path.exists(key_file)

    uvicorn.run(
        create_app(),
        host="0.0.0.0",  # noqa: S104
        port=port,
        ssl_certfile=cert_file if tls_enabled else None,
        ssl_keyfile=key_file if tls_enabled else None,
        log_config=None,
    )


if __name__ == "__main__":
    main()
