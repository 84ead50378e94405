import argparse
import asyncio
import logging

import uvicorn

from callrelay.config import HOST, PORT, SSL_CERTFILE, SSL_KEYFILE


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the CallRelay HTTP/SSE server")
    parser.add_argument("--host", default=HOST, help="Bind host")
    parser.add_argument("--port", type=int, default=PORT, help="Bind port")
    parser.add_argument("--certfile", default=SSL_CERTFILE, help="TLS certificate (PEM)")
    parser.add_argument("--keyfile", default=SSL_KEYFILE, help="TLS private key (PEM)")
    parser.add_argument(
        "--reload",
        action="store_true",
        help="Enable auto-reload for development",
    )
    args = parser.parse_args()

    uvicorn.run(
        "callrelay.main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level="info",
        ssl_certfile=args.certfile,
        ssl_keyfile=args.keyfile,
        timeout_graceful_shutdown=3,
    )


def agent_main() -> None:
    from callrelay.client.host import LoggingHost
    from callrelay.client.presence import PresenceAgent
    from callrelay.client.settings import DEFAULT_SETTINGS_PATH, ClientSettings

    parser = argparse.ArgumentParser(description="Run a CallRelay agent connection")
    parser.add_argument("--settings", default=str(DEFAULT_SETTINGS_PATH), help="Settings file")
    parser.add_argument("--set-extension", help="Save the extension number and exit")
    parser.add_argument("--set-server", help="Save the server address (host:port or URL) and exit")
    parser.add_argument("--set-secret", help="Save the shared secret and exit")
    parser.add_argument("--status", action="store_true", help="Ask the server whether this extension is registered and exit")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    settings = ClientSettings.load(args.settings)
    updates = {
        "extensionNumber": args.set_extension,
        "serverAddress": args.set_server,
        "sharedSecret": args.set_secret,
    }
    updates = {k: v for k, v in updates.items() if v is not None}
    if updates:
        settings.update(**updates)
        settings.save()
        print(f"Saved {', '.join(sorted(updates))} to {settings.path}")
        return

    if args.status:
        async def status() -> None:
            agent = PresenceAgent(settings, host=LoggingHost())
            try:
                registered, message = await agent.check_registration()
            finally:
                await agent.stop()
            print(message)
            raise SystemExit(0 if registered else 1)

        asyncio.run(status())
        return

    async def run() -> None:
        agent = PresenceAgent(settings, host=LoggingHost())
        await agent.run_forever()

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
