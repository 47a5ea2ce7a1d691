import json
import time
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from lotg.cli.config_manager import get_config_manager, LotgConfigManager
from lotg.core.approval_policy import ApprovalPolicyEngine
from lotg.core.errors import ConflictError, InvalidRequestError, LotgError, NotFoundError, PolicyViolationError
from lotg.core.extraction import OpenAIExtractionAdapter
from lotg.core.ingest import IngestionPipeline, IngestResult
from lotg.core.jobs import JobLifecycleManager
from lotg.core.logging_config import configure_logging
from lotg.core.models import ExtractionJob, LAWS, QuestionStatus, normalize_law
from lotg.core.object_store import LocalObjectStore
from lotg.core.pg_store import PostgresDocumentStore
from lotg.core.question_bank import QuestionBankManager
from lotg.core.quiz import QuizService
from lotg.core.review import ReviewCoordinator, VALID_STATUSES
from lotg.core.store import DocumentStore, InMemoryDocumentStore
from lotg.core.watch_folder import UploadWatcher, WatchFolderManager

app = typer.Typer(help="lotg CLI: Laws of the Game exam question bank")
console = Console()

_config = get_config_manager()

configure_logging(
    log_level=_config.get("log_level"),
    json_logs=_config.get("json_logs"),
)

EXIT_CODES = {
    InvalidRequestError: 2,
    PolicyViolationError: 2,
    NotFoundError: 3,
    ConflictError: 4,
}


def _fail(e: LotgError):
    console.print(f"[red]Error:[/] {e}")
    exit_code = next((code for cls, code in EXIT_CODES.items() if isinstance(e, cls)), 1)
    raise typer.Exit(exit_code)


def build_store(config: LotgConfigManager) -> DocumentStore:
    """Construct the configured document store."""
    kind = config.get("store")
    if kind == "memory":
        return InMemoryDocumentStore()
    if kind == "postgres":
        return PostgresDocumentStore(config.get("database_url"))
    console.print(f"[red]Error:[/] Unknown store '{kind}' (expected memory or postgres)")
    raise typer.Exit(1)


def build_pipeline(config: LotgConfigManager, store: DocumentStore) -> IngestionPipeline:
    extractor = OpenAIExtractionAdapter(
        api_key=config.get("openai_api_key") or None,
        model=config.get("extraction_model"),
        timeout=float(config.get("extraction_timeout")),
    )
    return IngestionPipeline(
        store=store,
        object_store=LocalObjectStore(Path(config.get("upload_root"))),
        extractor=extractor,
        policy=ApprovalPolicyEngine(config.get("policy_path")),
        # outer bound covers the adapter's own retries
        extraction_timeout=float(config.get("extraction_timeout")) * 3 + 30,
    )


def _print_result(result: IngestResult):
    colour = "green" if result.success else "red"
    console.print(f"[{colour}]{result.status.value}[/] job {result.job_id} ({result.source_key})")
    if result.skipped:
        console.print("   [yellow]Already ingested; skipped[/]")
    console.print(f"   Questions: {result.total_questions} "
                  f"(approved {result.approved_count}, pending {result.pending_count})")
    console.print(f"   Duplicates: {result.duplicate_count}   Discarded: {result.discarded_count}")
    if result.failed_chunks:
        console.print(f"   [yellow]Persisted {result.persisted} of {result.staged} staged; "
                      f"failed chunks {result.failed_chunks}[/]")
    if result.error:
        console.print(f"   [red]Error:[/] {result.error}")
    console.print(f"   Time: {result.elapsed_seconds:.1f}s")


def _print_job(job: ExtractionJob):
    console.print(f"\n[bold]Job {job.job_id}[/] {job.display_name}")
    console.print(f"  Status: {job.status.value}   Source: {job.source.value}   "
                  f"Published: {'yes' if job.published else 'no'}")
    console.print(f"  Questions: {job.total_questions}  approved {job.approved_count}  "
                  f"pending {job.pending_count}  rejected {job.rejected_count}  "
                  f"duplicates {job.duplicate_count}")
    if job.error_message:
        console.print(f"  [red]Error:[/] {job.error_message}")
    if not job.counters_consistent:
        console.print("  [yellow]Counters do not add up; run 'lotg reconcile'[/]")
    console.print(f"  Created: {job.created_at}   Updated: {job.updated_at}")


@app.command()
def ingest(
    path: str,
    job_id: Optional[str] = typer.Option(None, "--job-id", help="Job id for a single file"),
    bucket: str = typer.Option("local", "--bucket", help="Upload bucket"),
):
    """Ingest an exam PDF, or every PDF in a directory."""
    input_path = Path(path)
    if not input_path.exists():
        console.print(f"[red]Error:[/] Path {path} does not exist")
        raise typer.Exit(1)
    if input_path.is_dir() and job_id:
        console.print("[red]Error:[/] --job-id only applies to a single file")
        raise typer.Exit(1)

    pipeline = build_pipeline(_config, build_store(_config))

    try:
        with console.status("[bold green]Extracting questions..."):
            if input_path.is_dir():
                results = pipeline.ingest_directory(input_path, bucket=bucket)
            else:
                results = [pipeline.process_file(input_path, bucket=bucket, job_id=job_id)]
    except LotgError as e:
        _fail(e)

    if not results:
        console.print(f"[yellow]No PDFs found in {path}[/]")
        return

    for result in results:
        _print_result(result)

    if not all(r.success for r in results):
        raise typer.Exit(1)


@app.command()
def watch(
    debounce: Optional[float] = typer.Option(None, "--debounce", help="Debounce time in seconds"),
):
    """Watch the upload area and ingest PDFs dropped under <bucket>/uploads/<jobId>/."""
    upload_root = Path(_config.get("upload_root"))
    pipeline = build_pipeline(_config, build_store(_config))
    watcher = UploadWatcher(
        upload_root,
        pipeline,
        debounce_time=debounce if debounce is not None else float(_config.get("watch_debounce")),
        callback=lambda key, result: _print_result(result),
    )
    manager = WatchFolderManager(watcher)

    console.print(f"[green]Watching {upload_root}[/]")
    console.print("[yellow]Note:[/] This will run until you stop it with Ctrl+C")
    manager.start()
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopping watcher...[/]")
        manager.stop()
        watcher.print_stats()


@app.command()
def jobs(
    job_id: Optional[str] = typer.Argument(None, help="Show a single job"),
    limit: int = typer.Option(20, "--limit", help="Maximum jobs to list"),
):
    """List extraction jobs, newest first."""
    manager = JobLifecycleManager(build_store(_config))
    try:
        if job_id:
            _print_job(manager.get(job_id))
            return
        job_list = manager.list_jobs(limit=limit)
    except LotgError as e:
        _fail(e)

    if not job_list:
        console.print("[yellow]No jobs found[/]")
        return

    table = Table(title="Extraction Jobs")
    for column in ("Job", "Name", "Status", "Total", "Approved", "Pending", "Rejected", "Published"):
        table.add_column(column)
    for job in job_list:
        table.add_row(
            job.job_id, job.display_name, job.status.value,
            str(job.total_questions), str(job.approved_count),
            str(job.pending_count), str(job.rejected_count),
            "yes" if job.published else "",
        )
    console.print(table)


@app.command()
def questions(
    law: Optional[str] = typer.Option(None, "--law", help="Law 1 .. Law 17"),
    status: Optional[str] = typer.Option(None, "--status", help=f"One of: {', '.join(VALID_STATUSES)}"),
    limit: int = typer.Option(50, "--limit", help="1-200"),
):
    """List bank questions. With only --status, shows the review queue oldest first."""
    bank = QuestionBankManager(build_store(_config))
    try:
        question_status = QuestionStatus(status) if status else None
    except ValueError:
        console.print(f"[red]Error:[/] Invalid status. Must be one of: {', '.join(VALID_STATUSES)}")
        raise typer.Exit(2)

    try:
        if law:
            normalized = normalize_law(law)
            if normalized is None:
                console.print(f"[red]Error:[/] Invalid law. Must be one of: {', '.join(LAWS)}")
                raise typer.Exit(2)
            items = bank.list_by_law(normalized, question_status, limit=limit)
        elif question_status:
            items = bank.list_by_status(question_status, limit=limit)
        else:
            items = bank.list_all(limit=limit)
    except LotgError as e:
        _fail(e)

    if not items:
        console.print("[yellow]No questions found[/]")
        return

    table = Table(title=f"Questions ({len(items)})")
    for column in ("Question", "Law", "Status", "Confidence", "Text"):
        table.add_column(column)
    for question in items:
        text = question.text if len(question.text) <= 70 else question.text[:67] + "..."
        table.add_row(question.question_id, question.law, question.status.value,
                      f"{question.confidence:.2f}", text)
    console.print(table)


@app.command()
def review(
    question_id: str,
    status: str = typer.Argument(..., help=f"One of: {', '.join(VALID_STATUSES)}"),
    reviewed_by: Optional[str] = typer.Option(None, "--by", help="Reviewer name"),
):
    """Set the status of one question."""
    coordinator = ReviewCoordinator(build_store(_config))
    try:
        result = coordinator.review(question_id, status, reviewed_by or _config.get("reviewer"))
    except LotgError as e:
        _fail(e)

    if result.changed:
        console.print(f"[green]{question_id}: {result.previous_status.value} -> {result.status.value}[/]")
    else:
        console.print(f"[yellow]{question_id} already {result.status.value}; counters unchanged[/]")


@app.command("bulk-review")
def bulk_review(
    status: str = typer.Argument(..., help=f"One of: {', '.join(VALID_STATUSES)}"),
    question_ids: List[str] = typer.Argument(..., help="Up to 100 question ids"),
    reviewed_by: Optional[str] = typer.Option(None, "--by", help="Reviewer name"),
):
    """Set the same status on many questions."""
    coordinator = ReviewCoordinator(build_store(_config))
    try:
        result = coordinator.bulk_review(question_ids, status, reviewed_by or _config.get("reviewer"))
    except LotgError as e:
        _fail(e)

    summary = result.summary()
    console.print(f"[bold]Bulk review to {summary['targetStatus']}:[/] "
                  f"{summary['successful']}/{summary['total']} succeeded")
    for item in result.results:
        if not item.success:
            console.print(f"   [red]{item.question_id}:[/] {item.error}")
    for job_id in result.failed_jobs:
        console.print(f"   [yellow]Counters for job {job_id} not updated; run 'lotg reconcile {job_id}'[/]")

    if result.failed:
        raise typer.Exit(1)


@app.command()
def publish(
    job_id: str,
    unpublish: bool = typer.Option(False, "--unpublish", help="Withdraw the job instead"),
):
    """Publish a completed job with approved questions, or unpublish it."""
    manager = JobLifecycleManager(build_store(_config))
    try:
        job = manager.publish(job_id, publish=not unpublish)
    except LotgError as e:
        _fail(e)
    console.print(f"[green]Job {job.job_id} {'published' if job.published else 'unpublished'}[/]")


@app.command("create-job")
def create_job(
    title: str,
    description: str = typer.Option("", "--description", help="Job description"),
    category: Optional[str] = typer.Option(None, "--category", help="Question category"),
):
    """Create a manual job to add questions to by hand."""
    pipeline = IngestionPipeline(
        store=build_store(_config),
        object_store=LocalObjectStore(Path(_config.get("upload_root"))),
        extractor=OpenAIExtractionAdapter(),
    )
    try:
        job = pipeline.create_manual_job(title, description, category)
    except LotgError as e:
        _fail(e)
    console.print(f"[green]Created manual job {job.job_id}[/] ({job.display_name})")


@app.command("add-question")
def add_question(
    job_id: str,
    question_file: str = typer.Argument(..., help="JSON file with one question object or a list"),
):
    """Add reviewer-written questions to a job."""
    try:
        with open(question_file, 'r') as f:
            payload = json.load(f)
    except (OSError, ValueError) as e:
        console.print(f"[red]Error reading {question_file}:[/] {e}")
        raise typer.Exit(1)

    requests = payload if isinstance(payload, list) else [payload]
    pipeline = IngestionPipeline(
        store=build_store(_config),
        object_store=LocalObjectStore(Path(_config.get("upload_root"))),
        extractor=OpenAIExtractionAdapter(),
    )

    failures = 0
    for index, request in enumerate(requests):
        try:
            question = pipeline.add_manual_question(job_id, request)
        except (InvalidRequestError, ConflictError) as e:
            failures += 1
            console.print(f"   [red]#{index}:[/] {e}")
            continue
        except LotgError as e:
            _fail(e)
        console.print(f"   [green]#{index}:[/] added {question.question_id}")

    console.print(f"[bold]Added {len(requests) - failures} of {len(requests)} questions[/]")
    if failures:
        raise typer.Exit(1)


@app.command()
def quizzes(
    limit: Optional[int] = typer.Option(None, "--limit", help="Maximum quizzes to list"),
):
    """List published quizzes."""
    service = QuizService(build_store(_config))
    try:
        quiz_list = service.list_quizzes(limit=limit)
    except LotgError as e:
        _fail(e)

    if not quiz_list:
        console.print("[yellow]No published quizzes[/]")
        return

    table = Table(title="Quizzes")
    for column in ("Quiz", "Title", "Category", "Questions"):
        table.add_column(column)
    for item in quiz_list:
        table.add_row(item.quiz_id, item.title, item.category, str(item.question_count))
    console.print(table)


@app.command()
def quiz(
    quiz_id: str,
    draw: int = typer.Option(0, "--draw", help="Also draw this many questions (1-50)"),
):
    """Show a published quiz, optionally drawing questions from it."""
    service = QuizService(build_store(_config))
    try:
        detail = service.get_quiz(quiz_id)
        drawn = service.draw_questions(quiz_id, limit=draw) if draw else []
    except LotgError as e:
        _fail(e)

    console.print(f"\n[bold]{detail.title}[/] ({detail.quiz_id})")
    if detail.description:
        console.print(f"  {detail.description}")
    console.print(f"  Category: {detail.category}   Questions: {detail.question_count}")
    for number, question in enumerate(drawn, 1):
        console.print(f"\n[bold]{number}. {question.text}[/] [dim]{question.question_id}[/]")
        for index, option in enumerate(question.options):
            console.print(f"   {index}) {option}")


@app.command()
def submit(
    quiz_id: str,
    answers_file: str = typer.Argument(..., help='JSON list of {"questionId", "selectedOption"}'),
):
    """Score answers to a published quiz."""
    try:
        with open(answers_file, 'r') as f:
            payload = json.load(f)
    except (OSError, ValueError) as e:
        console.print(f"[red]Error reading {answers_file}:[/] {e}")
        raise typer.Exit(1)

    answers = payload.get("answers") if isinstance(payload, dict) else payload
    service = QuizService(build_store(_config))
    try:
        result = service.submit_answers(quiz_id, answers)
    except LotgError as e:
        _fail(e)

    for item in result.results:
        mark = "[green]correct[/]" if item.is_correct else f"[red]wrong[/] (answer {item.correct_option})"
        console.print(f"  {item.question_id}: {mark}   {item.law_reference}")
    for question_id in result.skipped:
        console.print(f"  [yellow]{question_id}: not part of this quiz; skipped[/]")
    console.print(f"[bold]Score: {result.correct}/{result.total} ({result.percentage}%)[/]")


@app.command()
def reconcile(
    job_id: Optional[str] = typer.Argument(None, help="Reconcile one job; all jobs when omitted"),
):
    """Recompute job counters from their questions."""
    coordinator = ReviewCoordinator(build_store(_config))
    try:
        if job_id:
            job = coordinator.reconcile_job(job_id)
            _print_job(job)
            return
        repaired = coordinator.reconcile_all()
    except LotgError as e:
        _fail(e)

    if not repaired:
        console.print("[green]All job counters are consistent[/]")
        return
    console.print(f"[yellow]Repaired {len(repaired)} jobs[/]")
    for job in repaired:
        _print_job(job)


@app.command()
def config(
    action: str = typer.Argument(..., help="Action: show, set, reset, validate"),
    key: Optional[str] = typer.Argument(None, help="Configuration key"),
    value: Optional[str] = typer.Argument(None, help="Configuration value"),
):
    """Manage lotg configuration settings."""
    if action == "show":
        console.print("\n[bold]Current Configuration:[/]")
        for item_key, item_value in _config.display_items().items():
            console.print(f"  [blue]{item_key}:[/] {item_value}")
    elif action == "set":
        if not key or value is None:
            console.print("[red]Error:[/] Both key and value required for 'set' action")
            raise typer.Exit(1)
        try:
            _config.set(key, value)
        except (KeyError, ValueError) as e:
            console.print(f"[red]Error:[/] {e}")
            raise typer.Exit(1)
        console.print(f"[green]Set {key}[/]")
    elif action == "reset":
        if not key:
            console.print("[red]Error:[/] Key required for 'reset' action")
            raise typer.Exit(1)
        _config.reset(key)
        console.print(f"[green]Reset {key} to default[/]")
    elif action == "validate":
        validation = _config.validate()
        for issue in validation["issues"]:
            console.print(f"[red]Issue:[/] {issue}")
        for warning in validation["warnings"]:
            console.print(f"[yellow]Warning:[/] {warning}")
        if not validation["valid"]:
            raise typer.Exit(1)
        console.print("[green]Configuration is valid[/]")
    else:
        console.print(f"[red]Error:[/] Unknown action: {action}")
        console.print("Available actions: show, set, reset, validate")
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
