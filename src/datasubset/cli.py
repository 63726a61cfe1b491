import time
from contextlib import ExitStack
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.markup import escape
from rich.status import Status

from datasubset import __version__
from datasubset.adapters.base import DatabaseAdapter
from datasubset.config import DatabaseType, ExportConfig, OutputFormat
from datasubset.config_file import ConfigFileError, DataSubsetConfig, load_config
from datasubset.constants import MAX_SUMMARY_ITEMS
from datasubset.core.cycles import find_dependency_cycles
from datasubset.core.dependency_graph import DatabaseGraph, TableDependencyGraphBuilder
from datasubset.core.engine import ExportTraversal
from datasubset.exceptions import (
    ConnectionError,
    DataSubsetError,
    DuplicateRowError,
    ExportError,
    TableNotFoundError,
    UnsupportedDatabaseError,
    UnsupportedFormatError,
)
from datasubset.input_validators import (
    ValidationError,
    parse_table_reference,
    validate_database_url,
    validate_output_file_path,
)
from datasubset.logging import get_logger, log_export_complete, setup_logging
from datasubset.output.binary import BinaryExporter
from datasubset.output.sql import InsertStatementGenerator
from datasubset.utils.connection import get_adapter, parse_database_url

logger = get_logger(__name__)

app = typer.Typer(
    name="datasubset",
    help="Export referentially-complete subsets of a relational database.",
    no_args_is_help=True,
)

console = Console(stderr=True)


def version_callback(value: bool):
    """Print version and exit."""
    if value:
        print(f"datasubset {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit.",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
):
    """datasubset - Export database subsets with all the rows they depend on."""
    pass


def create_progress_callback(status: Status | None, verbose: bool, console: Console):
    """
    Create a progress callback that updates Rich status display.

    Returns:
        Callback function with signature (stage, message, current, total) -> None
    """

    def callback(stage: str, message: str, current: int, total: int):
        if status:
            status.update(f"[bold blue]{escape(message)}[/bold blue]")
        if verbose:
            console.print(f"  [dim][{current}/{total}] {escape(message)}[/dim]")

    return callback


def _parse_enum_parameters(
    output_format: str,
    db_type: str | None,
    console: Console,
) -> tuple[OutputFormat, DatabaseType | None]:
    """
    Parse and validate the format and database type CLI parameters.

    Raises:
        typer.Exit: If a parameter is not a known value (exits with code 1)
    """
    try:
        format_enum = OutputFormat(output_format.lower())
    except ValueError:
        console.print(f"[red]Error:[/red] {escape(str(UnsupportedFormatError(output_format)))}")
        raise typer.Exit(1)

    if db_type is None:
        return format_enum, None

    try:
        db_type_enum = DatabaseType(db_type.lower())
    except ValueError:
        choices = ", ".join(d.value for d in DatabaseType)
        console.print(f"[red]Error:[/red] Invalid database type '{db_type}'. Use: {choices}")
        raise typer.Exit(1)

    return format_enum, db_type_enum


def _load_config(config: Path, database_url: str | None, console: Console) -> ExportConfig:
    """
    Load the configuration file and resolve the database URL.

    Raises:
        typer.Exit: If the file is invalid or no database URL is available
    """
    try:
        loaded: DataSubsetConfig = load_config(config)
    except ConfigFileError as e:
        console.print(f"[red]Config Error:[/red] {escape(str(e))}")
        raise typer.Exit(1)

    export_config = loaded.to_export_config(database_url=database_url)

    if not export_config.database_url:
        console.print(
            "[red]Error:[/red] Database URL is required. "
            "Provide it via --database-url or in the config file under 'database.url'"
        )
        raise typer.Exit(1)

    try:
        validate_database_url(export_config.database_url)
    except ValidationError as e:
        console.print(f"[red]Validation Error:[/red] {escape(str(e))}")
        raise typer.Exit(1)

    return export_config


def _resolve_db_type(export_config: ExportConfig, db_type: DatabaseType | None) -> DatabaseType:
    """Explicit database type, or the one named by the URL scheme."""
    if db_type is not None:
        return db_type
    assert export_config.database_url is not None
    return parse_database_url(export_config.database_url).db_type


def _connect(export_config: ExportConfig, db_type: DatabaseType) -> DatabaseAdapter:
    """Create and connect the adapter for the run."""
    assert export_config.database_url is not None
    adapter = get_adapter(db_type)
    adapter.connect(export_config.database_url)
    return adapter


def _build_graph(adapter: DatabaseAdapter, export_config: ExportConfig) -> DatabaseGraph:
    builder = TableDependencyGraphBuilder(adapter)
    return builder.build_dependency_graph(
        export_config.get_schemas(),
        export_config.table_configurations,
        export_config.tables_to_ignore,
    )


def _report_cycles(graph: DatabaseGraph, console: Console) -> int:
    cycles = find_dependency_cycles(graph, include_self_references=True)
    for cycle in cycles:
        console.print(f"  [yellow]Cycle:[/yellow] {escape(str(cycle))}")
    return len(cycles)


def _write_items(
    traversal: ExportTraversal,
    export_config: ExportConfig,
    graph: DatabaseGraph,
    output_format: OutputFormat,
    out_file: Path | None,
) -> None:
    """Stream exported items to ``out_file`` or stdout."""
    items = traversal.export(export_config.tables_to_export, graph)

    with ExitStack() as stack:
        if output_format == OutputFormat.BINARY:
            if out_file:
                stream = stack.enter_context(open(out_file, "wb"))
            else:
                stream = typer.get_binary_stream("stdout")
            for record in items:
                stream.write(record)
            stream.flush()
        else:
            if out_file:
                text_stream = stack.enter_context(open(out_file, "w", encoding="utf-8"))
                for statement in items:
                    text_stream.write(statement + "\n")
            else:
                for statement in items:
                    typer.echo(statement)


def _show_export_summary(
    traversal: ExportTraversal,
    out_file: Path | None,
    verbose: bool,
    console: Console,
) -> None:
    stats = traversal.stats
    console.print()
    console.print("[bold green]Export Complete![/bold green]")
    console.print(
        f"  Total: [cyan]{stats.rows_exported}[/cyan] rows from "
        f"[cyan]{len(stats.rows_per_table)}[/cyan] tables"
    )
    if stats.duplicate_rows_skipped:
        console.print(
            f"  Already exported rows skipped: [cyan]{stats.duplicate_rows_skipped}[/cyan]"
        )

    if verbose:
        console.print(f"  Queries executed: [cyan]{stats.queries_executed}[/cyan]")
        console.print()
        console.print("[bold]Tables exported:[/bold]")
        for table, count in stats.rows_per_table.items():
            console.print(f"  [dim]{escape(table)}:[/dim] {count} rows")

    if out_file:
        console.print(f"[green]Wrote export to [bold]{escape(str(out_file))}[/bold][/green]")


@app.command()
def export(
    config: Annotated[
        Path,
        typer.Option(
            "--config",
            "-c",
            help="Path to YAML configuration file",
        ),
    ],
    out_file: Annotated[
        Path | None,
        typer.Option(
            "--out-file",
            "-o",
            help="Write to file instead of stdout",
        ),
    ] = None,
    output_format: Annotated[
        str,
        typer.Option(
            "--format",
            "-f",
            help="Output format: insert, binary",
        ),
    ] = "insert",
    db_type: Annotated[
        str | None,
        typer.Option(
            "--db-type",
            "-d",
            help="Database type: postgres, sqlserver, mysql, sqlite (default: from URL)",
        ),
    ] = None,
    database_url: Annotated[
        str | None,
        typer.Option(
            "--database-url",
            help="Database connection URL (overrides the config file)",
        ),
    ] = None,
    fail_on_cycles: Annotated[
        bool,
        typer.Option(
            "--fail-on-cycles",
            help="Stop before exporting if the dependency graph has cycles",
        ),
    ] = False,
    verbose: Annotated[
        bool,
        typer.Option(
            "--verbose",
            "-v",
            help="Show detailed logs and per-table statistics",
        ),
    ] = False,
    quiet: Annotated[
        bool,
        typer.Option(
            "--quiet",
            "-q",
            help="Only report warnings and errors (for piping)",
        ),
    ] = False,
):
    """
    Export the configured root rows and every row they depend on.

    Examples:

        # INSERT statements on stdout
        datasubset export -c subset.yaml

        # MessagePack export to a file
        datasubset export -c subset.yaml -f binary -o subset.bin

        # Override the database from the config file
        datasubset export -c subset.yaml --database-url postgres://localhost/staging
    """
    try:
        setup_logging(verbose=verbose, quiet=quiet, structured=False)
        logger.debug("CLI command invoked", command="export", format=output_format)

        format_enum, db_type_enum = _parse_enum_parameters(output_format, db_type, console)

        if out_file:
            try:
                validate_output_file_path(out_file)
            except ValidationError as e:
                console.print(f"[red]Validation Error:[/red] {escape(str(e))}")
                raise typer.Exit(1)

        export_config = _load_config(config, database_url, console)
        if verbose and not quiet:
            console.print(f"[dim]Loaded config from {escape(str(config))}[/dim]")

        resolved_db_type = _resolve_db_type(export_config, db_type_enum)

        start = time.perf_counter()
        with _connect(export_config, resolved_db_type) as adapter:
            graph = _build_graph(adapter, export_config)

            if fail_on_cycles and graph.has_cycles():
                console.print("[red]Circular dependencies detected:[/red]")
                _report_cycles(graph, console)
                raise typer.Exit(1)

            generator: BinaryExporter | InsertStatementGenerator
            if format_enum == OutputFormat.BINARY:
                generator = BinaryExporter(adapter, resolved_db_type)
            else:
                generator = InsertStatementGenerator(adapter)

            with adapter.snapshot_transaction():
                if quiet:
                    traversal = ExportTraversal(adapter, generator)
                    _write_items(traversal, export_config, graph, format_enum, out_file)
                else:
                    with console.status("[bold blue]Exporting...[/bold blue]") as status:
                        progress_cb = create_progress_callback(
                            status if not verbose else None, verbose, console
                        )
                        traversal = ExportTraversal(adapter, generator, progress_cb)
                        _write_items(traversal, export_config, graph, format_enum, out_file)

        duration_ms = int((time.perf_counter() - start) * 1000)
        log_export_complete(
            logger, traversal.stats.items_generated, traversal.stats.rows_exported, duration_ms
        )

        if not quiet:
            _show_export_summary(traversal, out_file, verbose, console)

    except ConnectionError as e:
        logger.error("Database connection failed", error=e.reason, exc_info=True)
        console.print(f"[red]Connection failed:[/red] {escape(e.reason)}")
        console.print(f"[dim]URL: {escape(e.masked_url)}[/dim]")
        raise typer.Exit(1)

    except UnsupportedDatabaseError as e:
        logger.error("Unsupported database", error=str(e))
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        raise typer.Exit(1)

    except DuplicateRowError as e:
        logger.error("Unique lookup matched several rows", error=str(e), exc_info=True)
        console.print(f"[red]Export failed:[/red] {escape(str(e))}")
        raise typer.Exit(1)

    except ExportError as e:
        logger.error("Export failed", error=str(e), table=e.table, exc_info=True)
        console.print(f"[red]Export failed:[/red] {escape(str(e))}")
        raise typer.Exit(1)

    except DataSubsetError as e:
        logger.error("DataSubsetError occurred", error=str(e), exc_info=True)
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        raise typer.Exit(1)

    except (typer.Exit, SystemExit):
        raise

    except Exception as e:
        logger.critical("Unexpected error occurred", error=str(e), exc_info=True)
        console.print(f"[red]Unexpected error:[/red] {escape(str(e))}")
        if verbose:
            import traceback

            console.print(escape(traceback.format_exc()))
        raise typer.Exit(1)


@app.command()
def inspect(
    config: Annotated[
        Path,
        typer.Option(
            "--config",
            "-c",
            help="Path to YAML configuration file",
        ),
    ],
    table: Annotated[
        str | None,
        typer.Option(
            "--table",
            "-t",
            help="Show the dependency tree of a table (schema.table)",
        ),
    ] = None,
    database_url: Annotated[
        str | None,
        typer.Option(
            "--database-url",
            help="Database connection URL (overrides the config file)",
        ),
    ] = None,
    db_type: Annotated[
        str | None,
        typer.Option(
            "--db-type",
            "-d",
            help="Database type: postgres, sqlserver, mysql, sqlite (default: from URL)",
        ),
    ] = None,
):
    """
    Inspect the dependency graph without exporting data.

    Shows graph statistics, root and leaf tables, tables without a primary
    key and circular dependencies.
    """
    try:
        setup_logging(quiet=True)

        _, db_type_enum = _parse_enum_parameters(OutputFormat.INSERT.value, db_type, console)

        table_reference = None
        if table:
            try:
                table_reference = parse_table_reference(table)
            except ValidationError as e:
                console.print(f"[red]Validation Error:[/red] {escape(str(e))}")
                raise typer.Exit(1)

        export_config = _load_config(config, database_url, console)

        with _connect(export_config, _resolve_db_type(export_config, db_type_enum)) as adapter:
            with console.status("[bold blue]Building dependency graph...[/bold blue]"):
                builder = TableDependencyGraphBuilder(adapter)
                graph = builder.build_dependency_graph(
                    export_config.get_schemas(),
                    export_config.table_configurations,
                    export_config.tables_to_ignore,
                )

        if table_reference:
            _show_dependency_tree(builder, table_reference, console)
        else:
            _show_graph_summary(builder, graph, console)

    except ConnectionError as e:
        console.print(f"[red]Connection failed:[/red] {escape(e.reason)}")
        raise typer.Exit(1)

    except DataSubsetError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        raise typer.Exit(1)

    except (typer.Exit, SystemExit):
        raise

    except Exception as e:
        logger.critical("Unexpected error occurred", error=str(e), exc_info=True)
        console.print(f"[red]Unexpected error:[/red] {escape(str(e))}")
        raise typer.Exit(1)


def _format_tables(tables: list) -> str:
    names = [table.full_name for table in tables[:MAX_SUMMARY_ITEMS]]
    if len(tables) > MAX_SUMMARY_ITEMS:
        names.append(f"... and {len(tables) - MAX_SUMMARY_ITEMS} more")
    return ", ".join(names) if names else "none"


def _show_graph_summary(
    builder: TableDependencyGraphBuilder, graph: DatabaseGraph, console: Console
) -> None:
    summary = builder.summarize()

    console.print(f"\n[bold]Tables ({summary.node_count})[/bold]")
    for node in sorted(graph.nodes, key=lambda n: n.full_name.lower()):
        console.print(f"  {escape(str(node))}")

    console.print(f"\n[bold]Relations ({summary.edge_count})[/bold]")
    console.print(f"  Foreign keys: [cyan]{summary.foreign_key_count}[/cyan]")
    console.print(f"  Implicit relations: [cyan]{summary.implicit_relation_count}[/cyan]")

    console.print()
    console.print(f"[bold]Root tables:[/bold] {escape(_format_tables(summary.root_tables))}")
    console.print(f"[bold]Leaf tables:[/bold] {escape(_format_tables(summary.leaf_tables))}")

    if summary.tables_without_primary_key:
        console.print(
            "[yellow]Tables without primary key:[/yellow] "
            f"{escape(_format_tables(summary.tables_without_primary_key))}"
        )

    if summary.has_cycles:
        console.print()
        console.print("[yellow]⚠ Circular dependencies detected[/yellow]")
        _report_cycles(graph, console)
    else:
        console.print("\n[green]✓ No circular dependencies[/green]")


def _show_dependency_tree(
    builder: TableDependencyGraphBuilder, reference: tuple[str, str], console: Console
) -> None:
    schema, table_name = reference
    node = builder.find_table(schema, table_name)
    if node is None:
        raise TableNotFoundError(
            f"{schema}.{table_name}", [n.full_name for n in builder.get_all_tables()]
        )

    console.print(f"\n[bold]Dependencies of {escape(node.full_name)}[/bold]")
    for line in builder.iter_dependency_tree(node):
        indent = "  " * line.depth
        if line.edge is None:
            console.print(f"{indent}{escape(str(line.table))}")
            continue

        text = f"{indent}-> {line.table.full_name}  {line.edge.describe(line.table)}"
        if line.already_visited:
            text += " (already visited)"
        console.print(escape(text), soft_wrap=True)


if __name__ == "__main__":
    app()
