"""CLI interface for the deep research MCP server."""

import asyncio

import typer

from .config import settings
from .exceptions import DeepResearchError
from .providers import get_llm_from_settings

app = typer.Typer(help="Recursive deep research CLI")


def _make_tracer():
    from .observability import NullTracer, StoreTracer, TaskStore

    if not settings.telemetry.enabled:
        return NullTracer()
    return StoreTracer(TaskStore(settings.get_db_path()))


@app.command()
def research(
    query: str = typer.Argument(None, help="Project or task to research"),
    breadth: int = typer.Option(None, "--breadth", "-b", min=0, help="Search queries per level"),
    depth: int = typer.Option(None, "--depth", "-d", min=0, help="Recursion depth"),
    output_dir: str = typer.Option(None, "--output-dir", "-o", help="Directory for report, action plan and log"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Do not print log lines or progress bars"),
    answer: bool = typer.Option(False, "--answer", "-a", help="Also write a concise final answer"),
) -> None:
    """Run deep research and write the report, action plan and log."""
    from .research import ResearchOptions, research_runtime, run_research

    if not query:
        query = typer.prompt("What project or task would you like to research?")
    if breadth is None:
        breadth = typer.prompt(
            f"Enter research breadth (recommended 2-10, default {settings.research.default_breadth})",
            default=settings.research.default_breadth,
            type=int,
        )
    if depth is None:
        depth = typer.prompt(
            f"Enter research depth (recommended 1-5, default {settings.research.default_depth})",
            default=settings.research.default_depth,
            type=int,
        )

    async def _research():
        async with research_runtime(settings, tracer=_make_tracer()) as runtime:
            options = ResearchOptions(query=query, breadth=breadth, depth=depth, output_dir=output_dir, answer=answer)
            return await run_research(options, runtime, silent=quiet)

    try:
        outcome = asyncio.run(_research())
    except DeepResearchError as e:
        print(f"Error: {e}")
        raise typer.Exit(code=1) from e

    print(f"\nLearnings ({len(outcome.learnings)}):\n")
    print("\n".join(outcome.learnings))
    print(f"\nVisited URLs ({len(outcome.visited_urls)}):\n")
    print("\n".join(outcome.visited_urls))
    if outcome.answer:
        print(f"\nAnswer: {outcome.answer}")
    print(f"\nFinal report saved to {outcome.report_path}")
    if outcome.action_plan_path:
        print(f"Action plan saved to {outcome.action_plan_path}")
    print(f"Log saved to {outcome.log_path}")


@app.command()
def questions(
    query: str = typer.Argument(..., help="Project or task to prepare for"),
    max_items: int = typer.Option(5, "--max-items", "-n", min=1, help="Maximum number of items"),
) -> None:
    """List the information needed before researching a request."""
    from .research import generate_needed_information

    async def _questions():
        llm = get_llm_from_settings(settings.llm)
        return await generate_needed_information(llm, query, max_items=max_items)

    try:
        items = asyncio.run(_questions())
    except DeepResearchError as e:
        print(f"Error: {e}")
        raise typer.Exit(code=1) from e

    for i, item in enumerate(items, 1):
        print(f"{i}. {item.detail}\n   Why: {item.rationale}")


@app.command()
def config(
    save: bool = typer.Option(False, "--save", help="Write the effective settings (without API keys) to the config file"),
) -> None:
    """Show current configuration."""
    print(f"Provider: {settings.llm.provider}")
    print(f"Model: {settings.llm.model_name}")
    print(f"Base URL: {settings.llm.base_url or '(default)'}")
    print(f"LLM API key: {'set' if settings.llm.get_api_key_for_provider() else '(missing)'}")
    print(f"Search API: {settings.search.base_url}")
    print(f"Search API key: {'set' if settings.search.get_api_key() else '(missing)'}")
    print(f"Default Breadth: {settings.research.default_breadth}")
    print(f"Default Depth: {settings.research.default_depth}")
    print(f"Concurrency Limit: {settings.research.concurrency_limit}")
    print(f"Results Directory: {settings.get_results_dir()}")
    print(f"Telemetry: {'enabled' if settings.telemetry.enabled else 'disabled'} ({settings.get_db_path()})")
    if save:
        print(f"Configuration saved to {settings.save()}")


@app.command()
def server() -> None:
    """Start the MCP server (transport from settings)."""
    from .server import main

    main()


if __name__ == "__main__":
    app()
