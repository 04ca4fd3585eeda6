import typer
import asyncio
import logging
from pathlib import Path
from typing import List, Optional
from rich.console import Console
from rich.table import Table
from rich.progress import track

from .errors import GradingError
from .importers.json_records import load_session_file, SUPPORTED_SUFFIXES
from .instant_metrics import compute_instant
from .job_queue import InMemoryJobQueue
from .key_moments import KeyMomentExtractor
from .line_rating import LineRater
from .llm_client import LLMClient
from .phrase_cache import create_phrase_cache
from .pipeline import GradingPipeline
from .reports import ReportGenerator
from .schemas import ImportedSession, SessionGradingState, Utterance
from .session_store import InMemorySessionStore

app = typer.Typer(help="Session Grader - multi-phase sales conversation grading")
console = Console()


def _load(file_path: Path) -> ImportedSession:
    if not file_path.exists():
        console.print(f"[red]Error: {file_path} does not exist[/red]")
        raise typer.Exit(1)
    try:
        return load_session_file(file_path)
    except GradingError as e:
        console.print(f"[red]Error reading {file_path.name}: {e}[/red]")
        raise typer.Exit(1)


def _collect_files(path: Path) -> List[Path]:
    if path.is_dir():
        return sorted(p for p in path.iterdir() if p.suffix in SUPPORTED_SUFFIXES)
    return [path]


def _make_llm(model: str) -> LLMClient:
    try:
        return LLMClient(model=model)
    except ValueError as e:
        console.print(f"[red]Error initializing LLM client: {e}[/red]")
        console.print("[yellow]Make sure OPENAI_API_KEY is set in .env file[/yellow]")
        raise typer.Exit(1)


@app.command()
def instant(
    file_path: Path = typer.Argument(..., help="Transcript file (.json, .md or .txt)")
):
    """Instant heuristic metrics only (no LLM call)."""
    session = _load(file_path)
    try:
        metrics = compute_instant(session.transcript, session.prior_analytics)
    except GradingError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)

    table = Table(title=f"Instant Metrics - {session.session_id}")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="magenta")

    scores = metrics.estimated_scores
    table.add_row("Estimated Score", f"{metrics.estimated_score}/100")
    table.add_row("Rapport", str(scores.rapport))
    table.add_row("Discovery", str(scores.discovery))
    table.add_row("Objection Handling", str(scores.objection_handling))
    table.add_row("Closing", str(scores.closing))
    table.add_row("Safety", str(scores.safety))
    table.add_row("Conversation Balance", f"{metrics.conversation_balance}% rep")
    table.add_row("Questions / Objections / Closes", f"{metrics.question_count} / {metrics.objection_count} / {metrics.close_attempts}")
    table.add_row("Words per Minute", f"{metrics.words_per_minute:.0f}" if metrics.words_per_minute else "n/a")
    table.add_row("Filler Words", str(metrics.filler_words))

    console.print(table)
    if metrics.partial:
        console.print("[yellow]Metrics are partial: computation stopped early[/yellow]")


@app.command()
def moments(
    file_path: Path = typer.Argument(..., help="Transcript file (.json, .md or .txt)"),
    max_moments: int = typer.Option(10, "--max", help="Maximum number of key moments"),
    no_enrich: bool = typer.Option(False, "--no-enrich", help="Skip the LLM annotation pass"),
    model: str = typer.Option("gpt-4o", "--model", help="LLM model for annotations")
):
    """Extract and rank key moments."""
    session = _load(file_path)
    llm = None if no_enrich else _make_llm(model)
    extractor = KeyMomentExtractor(llm=llm, max_moments=max_moments, enrich=not no_enrich)
    selected = extractor.extract(session.transcript)

    table = Table(title=f"Key Moments - {session.session_id}")
    table.add_column("#", style="cyan")
    table.add_column("Type", style="magenta")
    table.add_column("Lines", style="blue")
    table.add_column("Importance", style="green")
    table.add_column("Outcome", style="yellow")
    table.add_column("Opening line")

    for moment in selected:
        label = moment.type + (f"/{moment.subtype}" if moment.subtype else "")
        table.add_row(
            moment.id,
            label,
            f"{moment.start_index}-{moment.end_index}",
            str(moment.importance),
            moment.outcome,
            moment.transcript.split("\n")[0][:60]
        )
    console.print(table)

    for moment in selected:
        if moment.analysis:
            console.print(f"\n[bold]{moment.id}[/bold]: {moment.analysis.what_happened}")
            console.print(f"  [green]Worked:[/green] {moment.analysis.what_worked}")
            console.print(f"  [yellow]Improve:[/yellow] {moment.analysis.what_to_improve}")
            if moment.analysis.alternative_response:
                console.print(f"  [blue]Try:[/blue] \"{moment.analysis.alternative_response}\"")


async def _grade_files(sessions: List[ImportedSession], run_deep: bool, enrich: bool) -> List[SessionGradingState]:
    pipeline = GradingPipeline(
        store=InMemorySessionStore(),
        queue=InMemoryJobQueue(),
        enable_deep_grade=run_deep,
        enrich_moments=enrich,
    )
    pipeline.start()
    accepted = []
    graded = []
    try:
        for session in sessions:
            try:
                await pipeline.orchestrator.grade(
                    session.session_id,
                    session.transcript,
                    duration_seconds=session.duration_seconds,
                    prior_analytics=session.prior_analytics,
                    run_deep_grade=run_deep,
                )
            except GradingError as e:
                console.print(f"[red]✗[/red] Skipped {session.session_id}: {e}")
                continue
            accepted.append(session.session_id)
        await pipeline.pool.drain()
        for session_id in accepted:
            graded.append(await pipeline.orchestrator.refresh_status(session_id))
    finally:
        await pipeline.shutdown()
    return graded


@app.command()
def grade(
    input_path: Path = typer.Argument(..., help="Transcript file or directory of transcripts"),
    output_dir: Path = typer.Option(Path("out"), "--out", help="Output directory for reports"),
    session_id: Optional[str] = typer.Option(None, "--session-id", help="Override the session id (single file only)"),
    duration: Optional[float] = typer.Option(None, "--duration", help="Conversation length in seconds"),
    no_deep: bool = typer.Option(False, "--no-deep", help="Skip the deep grade"),
    no_enrich: bool = typer.Option(False, "--no-enrich", help="Skip key-moment annotations"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose output")
):
    """Run the full grading pipeline and write reports."""
    if verbose:
        logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    if not input_path.exists():
        console.print(f"[red]Error: {input_path} does not exist[/red]")
        raise typer.Exit(1)

    files = _collect_files(input_path)
    if not files:
        console.print(f"[red]Error: No transcript files found in {input_path}[/red]")
        raise typer.Exit(1)

    sessions = []
    for transcript_file in track(files, description="Loading transcripts..."):
        try:
            sessions.append(load_session_file(transcript_file))
        except GradingError as e:
            console.print(f"[red]✗[/red] Failed to load {transcript_file.name}: {e}")

    if len(sessions) == 1:
        if session_id:
            sessions[0].session_id = session_id
        if duration is not None:
            sessions[0].duration_seconds = duration

    try:
        graded = asyncio.run(_grade_files(sessions, run_deep=not no_deep, enrich=not no_enrich))
    except ValueError as e:
        console.print(f"[red]Error initializing LLM clients: {e}[/red]")
        console.print("[yellow]Make sure OPENAI_API_KEY is set in .env file[/yellow]")
        raise typer.Exit(1)

    output_dir.mkdir(parents=True, exist_ok=True)
    generator = ReportGenerator()
    json_output = output_dir / "sessions.json"
    csv_output = output_dir / "sessions.csv"
    generator.generate_json_output(graded, json_output)
    generator.generate_csv_output(graded, csv_output)
    for state in graded:
        generator.generate_coaching_report(state, output_dir / f"{state.session_id}.md")

    table = Table(title="Grading Results")
    table.add_column("Session", style="cyan")
    table.add_column("Status", style="magenta")
    table.add_column("Score", style="green")
    table.add_column("Sale", style="yellow")
    table.add_column("Moments", style="blue")
    table.add_column("Lines Rated", style="blue")
    for state in graded:
        table.add_row(
            state.session_id,
            state.status.value,
            str(state.overall_score) if state.overall_score is not None else "-",
            {True: "closed", False: "no sale", None: "-"}[state.sale_closed],
            str(len(state.key_moments)),
            f"{len(state.line_ratings)} ({state.completed_batch_count}/{state.line_ratings_total_batches} batches)"
        )
    console.print(table)

    console.print(f"\n[bold green]Grading completed![/bold green]")
    console.print(f"JSON output: {json_output}")
    console.print(f"CSV output: {csv_output}")
    console.print(f"Coaching reports: {output_dir}/<session>.md")


@app.command()
def worker(
    concurrency: Optional[int] = typer.Option(None, "--concurrency", help="Concurrent batches (default WORKER_CONCURRENCY)"),
    rate_limit: Optional[int] = typer.Option(None, "--rate-limit", help="Jobs per second (default WORKER_RATE_LIMIT)")
):
    """Consume line-rating jobs from the configured queue until interrupted."""
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    async def run():
        pipeline = GradingPipeline(enable_deep_grade=False, enrich_moments=False,
                                   concurrency=concurrency, rate_limit=rate_limit)
        pipeline.start()
        console.print(f"[green]Line rating worker running ({pipeline.pool.concurrency} concurrent batches)[/green]")
        try:
            while pipeline.pool.running:
                await asyncio.sleep(1)
        finally:
            await pipeline.shutdown(drain=False)

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        console.print("[yellow]Worker stopped[/yellow]")


@app.command("rate-line")
def rate_line(
    text: str = typer.Argument(..., help="A line the rep said"),
    model: str = typer.Option("gpt-4o-mini", "--model", help="LLM model for ratings")
):
    """Rate a single rep line (cache-first)."""
    rater = LineRater(_make_llm(model), create_phrase_cache())

    async def run():
        try:
            return await rater.rate_line(Utterance(speaker="rep", text=text, index=0))
        finally:
            await rater.flush()
            await rater.cache.close()

    rating = asyncio.run(run())
    if rating.rating == "error":
        console.print(f"[red]Rating failed: {rating.error}[/red]")
        raise typer.Exit(1)

    console.print(f"[bold]{rating.rating}[/bold]" + (" [blue](cached)[/blue]" if rating.cached else ""))
    for i, alternative in enumerate(rating.alternatives, 1):
        console.print(f"{i}. {alternative}")


if __name__ == "__main__":
    app()
