"""agent-trace CLI: connectivity and read-side checks against the tracing API."""
import json

import typer
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from api.client import ApiClient
from core.config import ClientConfig
from core.errors import TracingError

app = typer.Typer(name="agent-trace", help="Inspect traces and spans on the remote tracing API")
console = Console()


def build_api() -> ApiClient:
    """API client configured from OPIK_* environment variables."""
    return ApiClient(ClientConfig.from_env())


def _fail(e: Exception) -> None:
    console.print(f"[bold red]Error:[/] {escape(str(e))}")
    raise typer.Exit(code=1)


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context):
    """Trace client diagnostics."""
    if ctx.invoked_subcommand is None:
        console.print(Panel(
            "Commands:\n"
            "  [cyan]agent-trace ping[/]              check connectivity\n"
            "  [cyan]agent-trace traces[/]            list recent traces\n"
            "  [cyan]agent-trace spans TRACE_ID[/]    list spans of a trace\n"
            "  [cyan]agent-trace get-trace ID[/]      show one trace as JSON\n"
            "  [cyan]agent-trace get-span ID[/]       show one span as JSON\n",
            title="agent-trace",
            border_style="green"
        ))

@app.command()
def ping():
    """Check that the API is reachable with the configured credentials."""
    try:
        with build_api() as api:
            api.ping()
            console.print(f"[green]✓ Reachable[/] {api.config.base_url} "
                          f"(workspace={api.config.workspace}, project={api.config.project_name})")
    except TracingError as e:
        _fail(e)

@app.command()
def traces(
    project: str = typer.Option(None, help="Project name (defaults to the configured one)"),
    page: int = typer.Option(1, help="Page number"),
    size: int = typer.Option(10, help="Page size"),
):
    """List recent traces with their span counts."""
    try:
        with build_api() as api:
            result = api.list_traces(project, page=page, size=size)
            if not result.content:
                console.print("[yellow]No traces found[/]")
                return

            table = Table(title=f"Traces (page {result.page}, {result.total} total)")
            table.add_column("Name")
            table.add_column("ID", style="cyan")
            table.add_column("Start")
            table.add_column("End")
            table.add_column("Spans", justify="right")
            for t in result.content:
                spans = api.list_spans(project, trace_id=t.get("id"), page=1, size=100)
                table.add_row(
                    t.get("name", ""),
                    t.get("id", ""),
                    t.get("start_time", ""),
                    t.get("end_time") or "[yellow]still open[/]",
                    str(spans.total),
                )
            console.print(table)
    except TracingError as e:
        _fail(e)

@app.command()
def spans(
    trace_id: str = typer.Argument(..., help="Trace ID"),
    project: str = typer.Option(None, help="Project name (defaults to the configured one)"),
    page: int = typer.Option(1, help="Page number"),
    size: int = typer.Option(50, help="Page size"),
):
    """List the spans of one trace."""
    try:
        with build_api() as api:
            result = api.list_spans(project, trace_id=trace_id, page=page, size=size)
            if not result.content:
                console.print("[yellow]No spans found[/]")
                return

            table = Table(title=f"Spans of {trace_id}")
            table.add_column("Name")
            table.add_column("Type")
            table.add_column("ID", style="cyan")
            table.add_column("Parent")
            table.add_column("Model")
            table.add_column("Provider")
            for s in result.content:
                table.add_row(
                    s.get("name", ""),
                    s.get("type", ""),
                    s.get("id", ""),
                    s.get("parent_span_id") or "-",
                    s.get("model") or "-",
                    s.get("provider") or "-",
                )
            console.print(table)
    except TracingError as e:
        _fail(e)

@app.command("get-trace")
def get_trace(trace_id: str = typer.Argument(..., help="Trace ID")):
    """Print one trace as JSON."""
    try:
        with build_api() as api:
            console.print_json(json.dumps(api.get_trace(trace_id)))
    except TracingError as e:
        _fail(e)

@app.command("get-span")
def get_span(span_id: str = typer.Argument(..., help="Span ID")):
    """Print one span as JSON."""
    try:
        with build_api() as api:
            console.print_json(json.dumps(api.get_span(span_id)))
    except TracingError as e:
        _fail(e)

if __name__ == "__main__":
    app()
