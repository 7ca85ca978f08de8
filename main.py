from __future__ import annotations

import argparse
import asyncio
import json
import logging
from pathlib import Path

from docbuilder.pipeline.steps import STEPS
from docbuilder.runner import resume_report, run_batch, run_payload, run_report_sync
from docbuilder.state import load_run_state
from docbuilder.storage import read_events
from docbuilder.types import RunState


def _print_json(payload: dict | list) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2, default=str))


def _status_snapshot(run: RunState, *, with_events: bool = False) -> dict:
    payload = {
        'run_id': str(run.id),
        'report_id': run.report_id,
        'status': run.status.value,
        'message': run.message,
        'error': run.error,
        'failed_step': run.failed_step,
        'current_step': run.current_step,
        'completed_steps': list(run.completed_steps),
        'created_at': run.created_at.isoformat(),
        'updated_at': run.updated_at.isoformat(),
        'artifacts': run.artifacts.model_dump(mode='json'),
    }
    if with_events:
        payload['events'] = read_events(run.id)
    return payload


def _parse_options(pairs: list[str] | None) -> dict[str, str]:
    options: dict[str, str] = {}
    for pair in pairs or []:
        key, sep, value = pair.partition('=')
        if not sep or not key.strip():
            raise argparse.ArgumentTypeError(f'options must look like key=value, got {pair!r}')
        options[key.strip()] = value.strip()
    return options


def cmd_run(args: argparse.Namespace) -> int:
    payload = run_report_sync(
        args.report_id,
        session_id=args.session_id,
        start_step=args.start_step,
        options=_parse_options(args.option),
        stop_after=args.stop_after,
    )
    if payload is None:
        _print_json({'status': 'error', 'message': 'Report pipeline crashed; see run events.'})
        return 1
    _print_json(payload.model_dump(mode='json'))
    return 0 if payload.success else 1


def cmd_resume(args: argparse.Namespace) -> int:
    if load_run_state(args.run_id) is None:
        _print_json({'status': 'error', 'message': f'Run not found: {args.run_id}'})
        return 2
    try:
        run, result = asyncio.run(resume_report(args.run_id, start_step=args.start_step))
    except (FileNotFoundError, ValueError) as exc:
        _print_json({'status': 'error', 'message': str(exc)})
        return 2
    payload = run_payload(run, result)
    _print_json(payload.model_dump(mode='json'))
    return 0 if payload.success else 1


def cmd_steps(args: argparse.Namespace) -> int:
    _print_json([{'name': step.name, 'criticality': step.criticality.value} for step in STEPS])
    return 0


def cmd_status(args: argparse.Namespace) -> int:
    run = load_run_state(args.run_id)
    if run is None:
        _print_json({'status': 'error', 'message': f'Run not found: {args.run_id}'})
        return 2
    _print_json(_status_snapshot(run, with_events=args.events))
    return 0


def cmd_batch(args: argparse.Namespace) -> int:
    report_ids = list(args.report_ids or [])
    if args.file:
        lines = Path(args.file).expanduser().read_text(encoding='utf-8').splitlines()
        report_ids.extend(line.strip() for line in lines if line.strip())
    if not report_ids:
        _print_json({'status': 'error', 'message': 'No report ids given'})
        return 2

    outcomes = asyncio.run(
        run_batch(report_ids, options=_parse_options(args.option), concurrency=args.concurrency)
    )
    rows = [run_payload(run, result).model_dump(mode='json') for run, result in outcomes]
    succeeded = sum(1 for row in rows if row['success'])
    _print_json({'total': len(rows), 'succeeded': succeeded, 'failed': len(rows) - succeeded, 'runs': rows})
    return 0 if succeeded == len(rows) else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='docbuilder report generation CLI')
    parser.add_argument('--log-level', default='INFO', help='Logging level (default: INFO)')
    sub = parser.add_subparsers(dest='command', required=True)

    run = sub.add_parser('run', help='Generate the report document and PDF for one report')
    run.add_argument('--report-id', required=True, help='Report ID in the content source')
    run.add_argument('--session-id', required=False, help='Session ID; names the PDF <session>.pdf')
    run.add_argument('--start-step', required=False, help='Start from this step (needs a prepared context)')
    run.add_argument('--stop-after', required=False, help='Stop after this step; resume later with `resume`')
    run.add_argument('--option', action='append', help='Pipeline option key=value (repeatable)')
    run.set_defaults(func=cmd_run)

    resume = sub.add_parser('resume', help='Resume a stored run from its recorded context')
    resume.add_argument('--run-id', required=True, help='Run ID')
    resume.add_argument('--start-step', required=False, help='Step to resume from (default: next step)')
    resume.set_defaults(func=cmd_resume)

    steps = sub.add_parser('steps', help='List pipeline steps in order')
    steps.set_defaults(func=cmd_steps)

    status = sub.add_parser('status', help='Get run status')
    status.add_argument('--run-id', required=True, help='Run ID')
    status.add_argument('--events', action='store_true', help='Include the event stream')
    status.set_defaults(func=cmd_status)

    batch = sub.add_parser('batch', help='Run several reports concurrently')
    batch.add_argument('report_ids', nargs='*', help='Report IDs')
    batch.add_argument('--file', required=False, help='File with one report ID per line')
    batch.add_argument('--concurrency', type=int, required=False)
    batch.add_argument('--option', action='append', help='Pipeline option key=value (repeatable)')
    batch.set_defaults(func=cmd_batch)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )
    return int(args.func(args))


if __name__ == '__main__':
    raise SystemExit(main())
