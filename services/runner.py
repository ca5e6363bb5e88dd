# services/runner.py
import argparse
import json
import signal
import sys
import threading
from dataclasses import asdict
from typing import List, Optional

from shared.config import Settings
from shared.errors import MalformedJobError, QueueUnavailableError
from shared.logger import configure_logging, debug_log
from shared.status import MessageStatus
from services.bootstrap import Runtime, build_runtime
from services.monitor import queue_report

SHUTDOWN_GRACE_SECONDS = 30


def _print_json(data):
    print(json.dumps(data, indent=2, ensure_ascii=False, default=str))


def run_worker(runtime: Runtime, with_recovery: bool = True) -> int:
    pool = runtime.build_pool()
    stop_event = pool.stop_event

    def _shutdown(signum, frame):
        debug_log(f"收到信号 {signum}，准备优雅退出...", "WARNING")
        pool.stop()

    signal.signal(signal.SIGTERM, _shutdown)
    signal.signal(signal.SIGINT, _shutdown)

    pool.start()
    scanner_thread = None
    if with_recovery:
        scanner = runtime.build_scanner()
        scanner_thread = threading.Thread(
            target=scanner.run_forever, args=(stop_event,), name="recovery-scanner", daemon=True
        )
        scanner_thread.start()

    # 主线程只负责等信号
    while not stop_event.wait(timeout=1.0):
        pass

    finished = pool.join(timeout=SHUTDOWN_GRACE_SECONDS)
    if scanner_thread is not None:
        scanner_thread.join(timeout=5)
    if not finished:
        debug_log("部分任务未在宽限期内结束，租约过期后会被重新投递", "WARNING")
    debug_log(f"退出统计: {asdict(pool.state)}", "INFO")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="message-pipeline", description="Async message job pipeline")
    parser.add_argument("--env-file", default=None, help="path to a .env file (default: project root)")
    sub = parser.add_subparsers(dest="command", required=True)

    worker = sub.add_parser("worker", help="run the worker pool (and the recovery scanner)")
    worker.add_argument("--mock", action="store_true", help="use the in-process mock processor")
    worker.add_argument("--no-recovery", action="store_true", help="do not run the recovery scanner thread")

    sub.add_parser("recover", help="run one recovery scan")

    janitor = sub.add_parser("janitor", help="resolve messages stuck past the janitor threshold")
    janitor.add_argument("--dry-run", action="store_true")
    janitor.add_argument("--threshold-minutes", type=float, default=None)

    sub.add_parser("status", help="queue counts and worker heartbeat liveness")

    submit = sub.add_parser("submit", help="persist and enqueue a message")
    submit.add_argument("--message-id", required=True)
    submit.add_argument("--query", required=True)
    submit.add_argument("--user-id", required=True)
    submit.add_argument("--session-id", required=True)
    submit.add_argument("--file-id", action="append", default=[], dest="file_ids")

    sig = sub.add_parser("signal", help="externally cancel or expire a message")
    sig.add_argument("message_id")
    sig.add_argument("status", choices=[MessageStatus.CANCELLED.value, MessageStatus.EXPIRED.value])
    sig.add_argument("--reason", default=None)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = Settings.from_env(args.env_file)
    configure_logging(settings.log_level)

    runtime = build_runtime(settings, mock=getattr(args, "mock", False))
    try:
        if args.command == "worker":
            return run_worker(runtime, with_recovery=not args.no_recovery)

        if args.command == "recover":
            _print_json(asdict(runtime.build_scanner().scan_once()))
            return 0

        if args.command == "janitor":
            threshold = args.threshold_minutes * 60 if args.threshold_minutes is not None else None
            _print_json(asdict(runtime.build_janitor(threshold).run(dry_run=args.dry_run)))
            return 0

        if args.command == "status":
            _print_json(queue_report(runtime.queue, runtime.clock.now()))
            return 0

        if args.command == "submit":
            try:
                result = runtime.build_producer().submit(
                    args.message_id, args.query, args.user_id, args.session_id, file_ids=args.file_ids
                )
            except MalformedJobError as e:
                print(f"❌ {e}", file=sys.stderr)
                return 2
            except QueueUnavailableError as e:
                print(f"❌ 队列不可用: {e}", file=sys.stderr)
                return 1
            _print_json(asdict(result))
            return 0

        if args.command == "signal":
            written = runtime.store.signal_terminal(args.message_id, MessageStatus(args.status), args.reason)
            print("✅ 已更新" if written else "✋ 未更新 (消息不存在或已是终态)")
            return 0 if written else 1
    finally:
        runtime.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
