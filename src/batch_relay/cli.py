import argparse
import sys

from . import config as config_lib
from . import relay
from .driver import BatchRelayError


def _add_common(parser):
    parser.add_argument("--db", type=str, help="Job database path")
    parser.add_argument("--config", type=str, help="Extra YAML config file")


def _add_remote(parser):
    parser.add_argument(
        "--remote", choices=list(relay.REMOTE_BACKENDS), default="subprocess",
        help="Remote operation backend",
    )


def _print_job(job):
    print("\n" + "=" * 60)
    print(f"JOB {job.job_id}")
    print("=" * 60)
    print(f"Phase:                {job.phase.value}")
    print(f"Notifier:             {job.notifier}")
    print(f"Passes:               {job.pass_count}")
    print(f"Created:              {job.created_at.isoformat(timespec='seconds')}")
    if job.completed_at:
        print(f"Completed:            {job.completed_at.isoformat(timespec='seconds')}")
    if job.notify_error:
        print(f"Notifier error:       {job.notify_error}")
    print("-" * 60)
    for item in job.items:
        chain = "↳" if item.wait_for_previous else " "
        detail = ""
        if item.failure is not None:
            detail = f"{item.failure.error_type}: {item.failure.message}"
        elif item.status is not None:
            detail = item.status.error_message or item.status.message or ""
        print(f"{chain} [{item.index:>3}] {item.state.value:<10} polls={item.poll_count:<4} {detail}")
    print("=" * 60)


def main():
    parser = argparse.ArgumentParser(
        prog="batch-relay", description="Resumable driver for long-running remote operations"
    )
    subparsers = parser.add_subparsers(dest="command", help="Subcommands")

    # SUBMIT
    submit_parser = subparsers.add_parser("submit", help="Create a job from an item file")
    submit_parser.add_argument("--items", "-i", type=str, required=True, help="YAML/JSON item file")
    submit_parser.add_argument(
        "--notifier", choices=["print", "json"], default="print", help="Completion notifier"
    )
    _add_remote(submit_parser)
    submit_parser.add_argument("--scope-size", type=int, help="Items dispatched per pass")
    submit_parser.add_argument("--max-polls", type=int, help="Fail items after N polls")
    submit_parser.add_argument("--poll-interval", type=float, help="Seconds between passes")
    submit_parser.add_argument("--summary-dir", type=str, help="Directory for JSON summaries")
    submit_parser.add_argument(
        "--no-process", action="store_true", help="Schedule only, don't run passes"
    )
    _add_common(submit_parser)

    # RUN
    run_parser = subparsers.add_parser("run", help="Run due passes until none remain")
    run_parser.add_argument("--max-passes", type=int, help="Stop after N passes")
    run_parser.add_argument("--poll-interval", type=float, help="Seconds between passes")
    _add_remote(run_parser)
    _add_common(run_parser)

    # PASS
    pass_parser = subparsers.add_parser("pass", help="Run exactly one pass for a job")
    pass_parser.add_argument("job_id", type=str, help="Job identifier")
    _add_remote(pass_parser)
    _add_common(pass_parser)

    # STATUS
    status_parser = subparsers.add_parser("status", help="Show job status")
    status_parser.add_argument("job_id", nargs="?", help="Job identifier (default: summary)")
    _add_common(status_parser)

    # JOBS subcommands (clear)
    jobs_parser = subparsers.add_parser("jobs", help="Manage stored jobs")
    jobs_subparsers = jobs_parser.add_subparsers(dest="jobs_command", help="Job commands")
    clear_parser = jobs_subparsers.add_parser("clear", help="Delete all jobs")
    _add_common(clear_parser)

    # DEMO
    subparsers.add_parser("demo", help="Run a simulated job")

    args = parser.parse_args()

    try:
        _dispatch(args, parser, jobs_parser)
    except BatchRelayError as e:
        print(f"❌ {e}")
        sys.exit(1)


def _dispatch(args, parser, jobs_parser):
    if args.command is None:
        parser.print_help()
        return

    if args.command == "demo":
        relay.run_demo()
        return

    if args.command == "jobs" and args.jobs_command is None:
        jobs_parser.print_help()
        return

    cli_dict = {k: v for k, v in vars(args).items() if v is not None}
    conf = config_lib.resolve_config(cli_dict, config_path=cli_dict.get("config"))

    if args.command == "submit":
        result = relay.submit_job(
            items_path=args.items,
            config=conf,
            notifier=args.notifier,
            remote=args.remote,
            process=not args.no_process,
        )
        print(f"Job {result['job_id']}: {result['phase']}")

    elif args.command == "run":
        summary = relay.process_passes(conf, max_passes=args.max_passes, remote=args.remote)
        print("\n" + "=" * 60)
        print("PASS SUMMARY")
        print("=" * 60)
        print(f"Passes run:           {summary.passes}")
        print(f"Jobs completed:       {summary.completed_jobs}")
        print(f"Missing jobs:         {summary.missing_jobs}")
        print(f"Stale claims reset:   {summary.reset_claims}")
        print("=" * 60)

    elif args.command == "pass":
        phase = relay.run_single_pass(args.job_id, conf, remote=args.remote)
        print(f"Job {args.job_id}: {phase.value}")

    elif args.command == "status":
        if args.job_id:
            _print_job(relay.get_job(args.job_id, conf))
        else:
            stats = relay.get_job_stats(conf)
            print("\n" + "=" * 60)
            print("JOB STATUS")
            print("=" * 60)
            print(f"Running:              {stats['running']}")
            print(f"Awaiting next pass:   {stats['awaiting_next_pass']}")
            print(f"Complete:             {stats['complete']}")
            print(f"Total:                {stats['total']}")
            print(f"Scheduled passes:     {stats['scheduled_passes']}")
            print("=" * 60)

    elif args.command == "jobs" and args.jobs_command == "clear":
        relay.clear_jobs(conf)


if __name__ == "__main__":
    main()
