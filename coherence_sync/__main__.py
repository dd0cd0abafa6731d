"""
Coherence Sync: CLI Entry Point

Commands:
  run                      Live session in foreground (SIGINT/SIGTERM = unload)
  run --recover CODE       Re-anchor this device with an access code first
  status COLLECTION ID     Show a stored progress document
  serve                    Run the API server (uvicorn)
  assign-code UID VISITOR  Issue an access code
  recover CODE             Redeem an access code (against the API server)
  erase UID                Delete every document owned by a uid
  migrate-observers        Copy legacy users/ progress into observers/
    --dry-run              Report only, write nothing

Any command accepts --log-level LEVEL (default COHERENCE_LOG_LEVEL or INFO).
"""

import asyncio
import logging
import signal
import sys

from . import config as cfg


def setup_logging():
    from .logging_config import setup_logging as _setup
    _setup(level=_option("--log-level"))


def _arg(index: int, name: str) -> str:
    if len(sys.argv) <= index:
        print(f"Missing argument: {name}")
        sys.exit(1)
    return sys.argv[index]


def _option(flag: str):
    if flag in sys.argv:
        pos = sys.argv.index(flag)
        if pos + 1 < len(sys.argv):
            return sys.argv[pos + 1]
    return None


async def cmd_run():
    """Run one live session until interrupted."""
    from storage import open_store
    from .auth import LocalAuthGateway
    from .identity import FileStateStore
    from .recovery import AccessCodeService, HttpRecoveryChannel, LocalRecoveryChannel
    from .session import CoherenceSession

    gateway = LocalAuthGateway()
    code = _option("--recover")

    async with open_store() as store:
        if "--remote-recovery" in sys.argv:
            channel = HttpRecoveryChannel()
        else:
            channel = LocalRecoveryChannel(AccessCodeService(store, gateway.minter))

        session = CoherenceSession(gateway, store, local=FileStateStore(), recovery=channel)
        session.rollover.add_listener(lambda day: print(f"  >> Day {day} (transition)"))

        stop = asyncio.Event()
        loop = asyncio.get_event_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop.set)
            except NotImplementedError:
                pass

        await session.start()
        if code:
            await session.recover(code)

        print(f"Session live: visitor {session.visitor_id}")
        print(f"  Day {session.day}  score {session.score:.1f}  {session.state.value}")
        print("  Ctrl+C to end the session")

        try:
            while not stop.is_set():
                try:
                    await asyncio.wait_for(stop.wait(), timeout=cfg.BACKUP_POLL_S)
                except asyncio.TimeoutError:
                    logging.getLogger("coherence").info(
                        f"day={session.day} score={session.score:.1f} state={session.state.value}"
                    )
        finally:
            session.on_unload()
            await session.stop()
            await channel.close()

        stats = session.stats
        print(f"Session ended: day {stats['day']}, score {stats['score']}, {stats['state']}")
        print(f"  Flushes: {stats['sync']['flushes']}  failures: {stats['sync']['failures']}")


async def cmd_status():
    """Show a stored progress document."""
    from storage import open_store
    from .engine import calculated_day
    from .models import ProgressRecord, utc_now

    collection = _arg(2, "COLLECTION")
    doc_id = _arg(3, "ID")

    async with open_store() as store:
        doc = await store.get(collection, doc_id)

    if doc is None:
        print(f"No document at {collection}/{doc_id}")
        sys.exit(1)

    now = utc_now()
    record = ProgressRecord.from_document(doc, now)
    print("=" * 60)
    print(f"  {collection}/{doc_id}")
    print("=" * 60)
    print(f"  Score:       {record.coherence_score:.1f} ({record.coherence_state.value})")
    print(f"  Day:         {record.day_progress} (calendar {calculated_day(record.start_date, now)})")
    print(f"  Start:       {record.start_date.isoformat()}")
    print(f"  Last seen:   {record.last_seen_at.isoformat()}")
    print(f"  Anchored:    {record.is_anchored} {record.anchored_principal_uid or ''}")
    print(f"  Visits:      {record.visit_count}")
    print(f"  Fragments:   {len(record.seen_fragments)}")
    if record.access_code:
        print(f"  Access code: {record.access_code}")
    print("=" * 60)


async def cmd_assign_code():
    from storage import open_store
    from .auth import TokenMinter
    from .recovery import AccessCodeService

    uid = _arg(2, "UID")
    visitor_id = _arg(3, "VISITOR")
    async with open_store() as store:
        code = await AccessCodeService(store, TokenMinter()).assign(uid, visitor_id)
    print(f"Access code for {visitor_id}: {code}")


async def cmd_recover():
    from .errors import RecoveryCodeInvalid
    from .recovery import HttpRecoveryChannel

    channel = HttpRecoveryChannel()
    try:
        grant = await channel.recover(_arg(2, "CODE"))
    except RecoveryCodeInvalid as exc:
        print(str(exc))
        sys.exit(1)
    finally:
        await channel.close()
    print(f"Visitor:  {grant.visitor_id}")
    print(f"Expires:  {grant.expires_at.isoformat() if grant.expires_at else '-'}")
    print(f"Token:    {grant.token}")


async def cmd_erase():
    from storage import erase_identity, open_store

    uid = _arg(2, "UID")
    async with open_store() as store:
        removed = await erase_identity(store, uid)
    for collection, existed in removed.items():
        print(f"  {collection:20s} {'deleted' if existed else 'absent'}")


async def cmd_migrate_observers():
    from storage import ObserverMigrator, open_store

    dry_run = "--dry-run" in sys.argv
    async with open_store() as store:
        stats = await ObserverMigrator(store, dry_run=dry_run).migrate_all()
    print(f"Migration {'(dry run) ' if dry_run else ''}complete:")
    for key, val in stats.items():
        print(f"  {key}: {val}")


def cmd_serve():
    import uvicorn

    port = int(_option("--port") or cfg.API_PORT)
    uvicorn.run("api.server:app", host=cfg.API_HOST, port=port)


def main():
    setup_logging()

    if len(sys.argv) < 2:
        print("Usage: python3 -m coherence_sync <command>")
        print()
        print("Commands:")
        print("  run                      Live session (--recover CODE, --remote-recovery)")
        print("  status COLLECTION ID     Show a stored progress document")
        print("  serve                    Run the API server (--port N)")
        print("  assign-code UID VISITOR  Issue an access code")
        print("  recover CODE             Redeem an access code via the API server")
        print("  erase UID                Delete every document owned by a uid")
        print("  migrate-observers        Copy users/ progress into observers/ (--dry-run)")
        print()
        print("Options: --log-level LEVEL")
        sys.exit(1)

    cmd = sys.argv[1]

    if cmd == "serve":
        cmd_serve()
        return

    commands = {
        "run": cmd_run,
        "status": cmd_status,
        "assign-code": cmd_assign_code,
        "recover": cmd_recover,
        "erase": cmd_erase,
        "migrate-observers": cmd_migrate_observers,
    }

    handler = commands.get(cmd)
    if not handler:
        print(f"Unknown command: {cmd}")
        print(f"Available: serve, {', '.join(commands.keys())}")
        sys.exit(1)

    asyncio.run(handler())


main()
