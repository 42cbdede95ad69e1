#!/usr/bin/env python3
"""Command-line interface for scoring scanned test papers."""

import asyncio
import functools
import logging
import sys
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import click
from rich.console import Console
from rich.table import Table

from paperscore.libs.config_loader import load_configs, load_default_configs
from .errors import ScoringError
from .extractor import VisionExtractor
from .models import ScoreUpdate, SubmissionStatus
from .orchestrator import BatchOrchestrator, BatchOutcome
from .review import ReviewService, format_number
from .rubric_parser import RubricParser
from .scorer import AnswerScorer
from .store import open_stores

LOG = logging.getLogger(__name__)

console = Console()


def handle_errors(func):
    """Report scoring errors as click errors (exit status 1)."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except ScoringError as e:
            raise click.ClickException(str(e))
    return wrapper


class AppContext:
    """Configuration and stores shared by all commands."""

    def __init__(self, configs, data_dir: Optional[Path] = None):
        self.configs = configs
        self.rubrics, self.submissions = open_stores(configs, data_dir)

    def orchestrator(self, with_adapters: bool = True) -> BatchOrchestrator:
        extractor = scorer = None
        if with_adapters:
            try:
                extractor = VisionExtractor(self.configs)
                scorer = AnswerScorer(self.configs)
            except Exception as e:
                raise click.ClickException(f"Failed to initialize models: {e}")
        return BatchOrchestrator(self.rubrics, self.submissions, extractor, scorer, configs=self.configs)

    def review(self) -> ReviewService:
        return ReviewService(self.rubrics, self.submissions)


pass_app = click.make_pass_decorator(AppContext)


def _parse_assignments(values: Tuple[str, ...], option: str) -> Dict[int, str]:
    """Parse repeated ``Q=VALUE`` options into a dict keyed by question number."""
    parsed = {}
    for value in values:
        number, sep, rest = value.partition('=')
        if not sep or not number.strip().isdigit():
            raise click.BadParameter(f"expected QUESTION=VALUE, got {value!r}", param_hint=option)
        parsed[int(number)] = rest
    return parsed


def _print_outcomes(outcomes: List[BatchOutcome]) -> None:
    table = Table(title="Batch Results")
    table.add_column("Submission", style="cyan")
    table.add_column("Status")
    table.add_column("Score", justify="right")
    table.add_column("Error", style="red")
    for outcome in outcomes:
        score = f"{format_number(outcome.total_score)}/{format_number(outcome.max_score)}" if outcome.success else "-"
        table.add_row(outcome.submission_id, outcome.status, score, outcome.error_message or "")
    console.print(table)

    failed = [o for o in outcomes if not o.success]
    console.print(f"Total: {len(outcomes)}  Succeeded: {len(outcomes) - len(failed)}  Failed: {len(failed)}")


@click.group()
@click.option('--config', '-c', 'config_paths', multiple=True,
              type=click.Path(exists=True, dir_okay=False),
              help='YAML config file (repeatable, later files override earlier ones)')
@click.option('--data-dir', '-d', type=click.Path(file_okay=False, path_type=Path), default=None,
              help='Directory holding rubrics and submissions (overrides storage.data_dir)')
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose logging')
@click.pass_context
def cli(ctx, config_paths, data_dir, verbose):
    """Score scanned test papers against rubrics."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    try:
        configs = load_configs(*config_paths) if config_paths else load_default_configs()
    except Exception as e:
        raise click.ClickException(f"Failed to load configuration: {e}")
    ctx.obj = AppContext(configs, data_dir)


# Rubrics

@cli.group()
def rubric():
    """Manage rubrics."""


@rubric.command('import')
@click.argument('path', type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option('--name', '-n', default=None, help='Rubric name when the file has no title')
@pass_app
@handle_errors
def rubric_import(app, path, name):
    """Import a rubric from a markdown or YAML file."""
    try:
        parsed = RubricParser().parse_file(path, name=name)
    except ValueError as e:
        raise click.ClickException(str(e))
    saved = app.rubrics.save(parsed)
    console.print(f"[green]✓ Imported rubric[/green] {saved.name} v{saved.version} "
                  f"({len(saved.questions)} questions, {format_number(saved.total_points)} points)")
    click.echo(saved.id)


@rubric.command('list')
@pass_app
def rubric_list(app):
    """List rubrics, most recently updated first."""
    table = Table(title="Rubrics")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Version")
    table.add_column("Questions", justify="right")
    table.add_column("Points", justify="right")
    table.add_column("Updated")
    for item in app.rubrics.list():
        table.add_row(item.id, item.name, item.version, str(len(item.questions)),
                      format_number(item.total_points), item.updated_at.strftime("%Y-%m-%d %H:%M"))
    console.print(table)


@rubric.command('show')
@click.argument('rubric_id')
@pass_app
@handle_errors
def rubric_show(app, rubric_id):
    """Show a rubric's questions and guidelines."""
    item = app.rubrics.get(rubric_id)
    console.print(f"\n[bold cyan]{item.name}[/bold cyan] v{item.version}")
    if item.description:
        console.print(item.description)

    table = Table()
    table.add_column("#", justify="right")
    table.add_column("Question")
    table.add_column("Points", justify="right")
    table.add_column("Criteria")
    for question in item.questions:
        table.add_row(str(question.question_number), question.question_text,
                      format_number(question.max_points), question.evaluation_criteria)
    console.print(table)

    guidelines = item.rubric_guidelines
    console.print(f"[green]Full credit:[/green] {guidelines.full_credit}")
    console.print(f"[yellow]Partial credit:[/yellow] {guidelines.partial_credit}")
    console.print(f"[red]No credit:[/red] {guidelines.no_credit}")


@rubric.command('delete')
@click.argument('rubric_id')
@click.option('--yes', is_flag=True, help='Delete without prompting')
@pass_app
@handle_errors
def rubric_delete(app, rubric_id, yes):
    """Delete a rubric."""
    item = app.rubrics.get(rubric_id)
    if not yes and not click.confirm(f"Delete rubric {item.name}?", default=False):
        console.print("[red]Rubric not deleted.[/red]")
        return
    app.rubrics.delete(rubric_id)
    console.print(f"[green]✓ Deleted rubric[/green] {rubric_id}")


# Submissions

@cli.command()
@click.argument('rubric_id')
@click.argument('images', nargs=-1, required=True,
                type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option('--name', '-n', 'candidate_name', default=None, help='Candidate name')
@pass_app
@handle_errors
def submit(app, rubric_id, images, candidate_name):
    """Register page images of one test paper against a rubric."""
    submission = app.orchestrator(with_adapters=False).create_submission(
        rubric_id, [str(p) for p in images], candidate_name
    )
    console.print(f"[green]✓ Created submission[/green] with {len(images)} page(s)")
    click.echo(submission.id)


def _select_ids(app: AppContext, submission_ids: Tuple[str, ...], rubric_id: Optional[str],
                statuses: Tuple[SubmissionStatus, ...]) -> List[str]:
    if submission_ids:
        return list(submission_ids)
    if not rubric_id:
        raise click.UsageError("Give submission ids or --rubric")
    return [s.id for s in app.submissions.list(rubric_id=rubric_id) if s.status in statuses]


def _run_batch(app: AppContext, operation: str, submission_ids: List[str],
               summary: Optional[Path]) -> None:
    if not submission_ids:
        console.print("[yellow]No submissions to run.[/yellow]")
        return
    orchestrator = app.orchestrator()
    outcomes = asyncio.run(getattr(orchestrator, operation)(submission_ids))
    _print_outcomes(outcomes)
    if summary:
        orchestrator.save_summary(outcomes, summary)
        console.print(f"Summary saved to: {summary}")
    if any(not o.success for o in outcomes):
        sys.exit(1)


_summary_option = click.option('--summary', '-o', type=click.Path(dir_okay=False, path_type=Path),
                               default=None, help='Save a YAML summary of the batch')
_rubric_option = click.option('--rubric', '-r', 'rubric_id', default=None,
                              help='Select all eligible submissions of this rubric')


@cli.command()
@click.argument('submission_ids', nargs=-1)
@_rubric_option
@_summary_option
@pass_app
@handle_errors
def process(app, submission_ids, rubric_id, summary):
    """Extract answers from pending submissions."""
    ids = _select_ids(app, submission_ids, rubric_id, (SubmissionStatus.PENDING,))
    _run_batch(app, 'process_many', ids, summary)


@cli.command()
@click.argument('submission_ids', nargs=-1)
@_rubric_option
@_summary_option
@pass_app
@handle_errors
def score(app, submission_ids, rubric_id, summary):
    """Score extracted submissions."""
    ids = _select_ids(app, submission_ids, rubric_id, (SubmissionStatus.EXTRACTED,))
    _run_batch(app, 'score_many', ids, summary)


@cli.command()
@click.argument('submission_ids', nargs=-1)
@_rubric_option
@_summary_option
@pass_app
@handle_errors
def run(app, submission_ids, rubric_id, summary):
    """Extract and score submissions in one go."""
    ids = _select_ids(app, submission_ids, rubric_id,
                      (SubmissionStatus.PENDING, SubmissionStatus.EXTRACTED))
    _run_batch(app, 'run_many', ids, summary)


@cli.command()
@click.argument('submission_id')
@click.option('--reextract', is_flag=True, help='Discard extracted answers and extract again')
@click.option('--no-run', is_flag=True, help='Only reset the submission')
@pass_app
@handle_errors
def retry(app, submission_id, reextract, no_run):
    """Retry a submission that ended in error."""
    orchestrator = app.orchestrator(with_adapters=not no_run)
    submission = asyncio.run(
        orchestrator.retry_submission(submission_id, force_reextract=reextract, run=not no_run)
    )
    console.print(f"[green]✓ Submission {submission.id} is now {submission.status.value}[/green]")


@cli.command()
@click.argument('submission_id')
@click.option('--set', '-s', 'points', multiple=True, metavar='Q=POINTS', help='Set points for a question')
@click.option('--feedback', '-f', multiple=True, metavar='Q=TEXT', help='Replace feedback for a question')
@click.option('--notes', default=None, help='Review notes')
@click.option('--by', 'reviewed_by', default=None, help='Reviewer name')
@pass_app
@handle_errors
def review(app, submission_id, points, feedback, notes, reviewed_by):
    """Adjust scores and mark a submission reviewed."""
    point_edits = _parse_assignments(points, '--set')
    feedback_edits = _parse_assignments(feedback, '--feedback')

    updates = []
    for number in sorted(set(point_edits) | set(feedback_edits)):
        try:
            value = float(point_edits[number]) if number in point_edits else None
        except ValueError:
            raise click.BadParameter(f"points for question {number} must be a number", param_hint='--set')
        updates.append(ScoreUpdate(question_number=number, points=value,
                                   feedback=feedback_edits.get(number)))

    submission = app.review().save_review(submission_id, updates, review_notes=notes,
                                          reviewed_by=reviewed_by)
    console.print(f"[green]✓ Reviewed[/green] {submission.id}: "
                  f"{format_number(submission.total_score)}/{format_number(submission.max_score)} "
                  f"({submission.percentage:.1f}%)")


@cli.command('list')
@click.option('--rubric', '-r', 'rubric_id', default=None, help='Only submissions for this rubric')
@click.option('--status', type=click.Choice([s.value for s in SubmissionStatus]), default=None,
              help='Only submissions in this status')
@pass_app
def list_submissions(app, rubric_id, status):
    """List submissions, newest first."""
    table = Table(title="Submissions")
    table.add_column("ID", style="cyan")
    table.add_column("Candidate")
    table.add_column("Status")
    table.add_column("Score", justify="right")
    table.add_column("Created")
    for submission in app.submissions.list(rubric_id=rubric_id, status=status):
        has_score = submission.status in (SubmissionStatus.SCORED, SubmissionStatus.REVIEWED)
        table.add_row(
            submission.id,
            submission.candidate_name or "Unnamed",
            submission.status.value,
            f"{format_number(submission.total_score)}/{format_number(submission.max_score)}" if has_score else "-",
            submission.created_at.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)


@cli.command()
@click.argument('submission_id')
@pass_app
@handle_errors
def show(app, submission_id):
    """Show a submission with its answers and scores."""
    submission = app.submissions.get(submission_id)
    console.print(f"\n[bold cyan]{submission.candidate_name or 'Unnamed'}[/bold cyan] "
                  f"({submission.id}) - {submission.status.value}")
    if submission.error_message:
        console.print(f"[red]Error:[/red] {submission.error_message}")

    table = Table()
    table.add_column("#", justify="right")
    table.add_column("Answer")
    table.add_column("Score", justify="right")
    table.add_column("Feedback")
    table.add_column("Flag")
    numbers = sorted({a.question_number for a in submission.extracted_answers}
                     | {s.question_number for s in submission.scores})
    for number in numbers:
        answer = submission.get_answer(number)
        question_score = submission.get_score(number)
        table.add_row(
            str(number),
            answer.student_answer if answer else "",
            f"{format_number(question_score.points)}/{format_number(question_score.max_points)}"
            if question_score else "-",
            question_score.feedback if question_score else "",
            "⚑" if question_score and question_score.flag_for_review else "",
        )
    console.print(table)

    if submission.scores:
        console.print(f"Total: {format_number(submission.total_score)}/{format_number(submission.max_score)} "
                      f"({submission.percentage:.1f}%)")
    if submission.review_notes:
        console.print(f"Review notes: {submission.review_notes}")


@cli.command()
@click.argument('rubric_id')
@click.option('--output', '-o', type=click.Path(dir_okay=False, path_type=Path), default=None,
              help='CSV file to write (default: print to stdout)')
@pass_app
@handle_errors
def export(app, rubric_id, output):
    """Export scored and reviewed submissions of a rubric as CSV."""
    service = app.review()
    if output:
        service.write_csv(rubric_id, output)
        console.print(f"[green]✓ Exported to[/green] {output}")
    else:
        click.echo(service.export_csv(rubric_id), nl=False)


@cli.command()
@click.option('--rubric', '-r', 'rubric_id', default=None, help='Only submissions for this rubric')
@pass_app
def stats(app, rubric_id):
    """Show summary statistics of scored submissions."""
    summary = app.review().get_summary_stats(rubric_id)
    console.print(f"Submissions: {summary['total']}")
    for status, count in sorted(summary['by_status'].items()):
        console.print(f"  {status}: {count}")
    console.print(f"Average: {summary['average']:.1f}%  Min: {summary['min']:.1f}%  Max: {summary['max']:.1f}%")
    console.print(f"Reviewed: {summary['reviewed']}  Flagged: {summary.get('flagged', 0)}")


def main():
    """Main entry point for the paperscore command."""
    cli()


if __name__ == '__main__':
    main()
