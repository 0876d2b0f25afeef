#!/usr/bin/env python
"""
Fit the ecological inference model to aggregated table data and save it.
"""

from pathlib import Path

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from eco_em.core.data import load_csv_to_dataset
from eco_em.em import (
    CARParameters,
    ConvergenceConfig,
    EcoEMEstimator,
    EcoEMError,
    FitConfig,
    FitResult,
    ModelOptions,
    NCARParameters,
    NCARRegressionParameters,
)
from eco_em.em.config import DEFAULT_MAX_ITERATIONS, DEFAULT_TOLERANCE
from eco_em.em.parameters import AnyParameters

ROOT_DIR = Path(__file__).parent.parent.absolute()
DEFAULT_OUTPUT_DIR = ROOT_DIR / "data" / "fitted-models"

console = Console(force_terminal=True, legacy_windows=True)
app = typer.Typer()


def save_model(model: FitResult, output_path: Path) -> None:
    """Write the fit result as indented JSON."""
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, "w") as f:
        f.write(model.model_dump_json(indent=4))


def initial_parameters(
    ncar: bool, fixed_rho: bool, rho: float
) -> AnyParameters:
    """Standard starting point with the requested latent correlation."""
    if not ncar:
        return CARParameters.default().replace(rho=rho)
    if fixed_rho:
        return NCARRegressionParameters.default().replace(rho12_3=rho)
    return NCARParameters.default().replace(rho12=rho)


def parameter_table(model: FitResult) -> Table:
    table = Table(title="Estimates")
    table.add_column("Parameter")
    table.add_column("Value", justify="right")
    for name, value in zip(
        model.parameters.names(), model.parameters.to_array(), strict=True
    ):
        table.add_row(name, f"{value:.6f}")
    return table


@app.command()
def main(
    input_path: Path = typer.Argument(
        ...,
        help="Path to CSV file with table rows (columns: kind, x, y, w1, w2)",
    ),
    output_dir: Path = typer.Option(
        DEFAULT_OUTPUT_DIR,
        "-o",
        "--output-dir",
        help="Directory the fit result JSON is written to",
    ),
    ncar: bool = typer.Option(
        False, "--ncar", help="Model the covariate jointly (NCAR)"
    ),
    fixed_rho: bool = typer.Option(
        False, "--fixed-rho", help="Hold the latent correlation fixed"
    ),
    rho: float = typer.Option(
        0.0, "--rho", help="Starting (or fixed) latent correlation"
    ),
    sem: bool = typer.Option(
        False, "--sem", help="Run the Supplemented-EM pass after EM"
    ),
    tolerance: float = typer.Option(
        DEFAULT_TOLERANCE, "--tolerance", help="Convergence tolerance"
    ),
    max_iterations: int = typer.Option(
        DEFAULT_MAX_ITERATIONS,
        "--max-iterations",
        help="Maximum number of EM iterations",
    ),
) -> None:
    """Fit the model to table data and save as JSON."""

    if not input_path.exists():
        console.print(f"[red]No such file: {input_path}[/red]")
        raise typer.Exit(1)
    if input_path.suffix != ".csv":
        console.print(
            f"[red]Expected a .csv file, got {input_path.suffix!r}[/red]"
        )
        raise typer.Exit(1)

    console.print("[dim]Reading table rows...[/dim]")
    try:
        dataset = load_csv_to_dataset(input_path)
    except ValueError as e:
        console.print(f"[red]Invalid input table: {e}[/red]")
        raise typer.Exit(1) from e

    console.print(
        Panel(
            f"[bold]Fit Ecological Inference Model[/bold]\n\n"
            f"Input: [cyan]{input_path}[/cyan]\n"
            f"Units: [cyan]{dataset.n_units}[/cyan] "
            f"([cyan]{dataset.n_regular}[/cyan] regular)\n"
            f"Model: [cyan]{'NCAR' if ncar else 'CAR'}[/cyan]\n"
            f"Fixed rho: [cyan]{fixed_rho}[/cyan]\n"
            f"SEM: [cyan]{sem}[/cyan]",
            title="Configuration",
        )
    )

    try:
        config = FitConfig(
            convergence=ConvergenceConfig(
                max_iterations=max_iterations, tolerance=tolerance
            ),
            options=ModelOptions(ncar=ncar, fixed_rho=fixed_rho),
        )
        estimator = EcoEMEstimator(config)
        initial = initial_parameters(ncar, fixed_rho, rho)

        console.print("[dim]Running EM...[/dim]")
        if sem:
            model = estimator.fit_with_sem(dataset, initial=initial)
        else:
            model = estimator.fit(dataset, initial=initial)
    except (EcoEMError, ValueError) as e:
        console.print(f"[red]Fit failed: {e}[/red]")
        raise typer.Exit(1) from e

    ll_text = "n/a"
    if model.log_likelihood is not None:
        ll_text = f"{model.log_likelihood:.2f}"
    console.print(
        f"  {model.convergence_status.value} "
        f"({model.n_iterations} iterations, LL={ll_text})"
    )
    console.print(parameter_table(model))
    if model.diagnostics.total:
        console.print(
            f"[yellow]Consistency warnings: {model.diagnostics}[/yellow]"
        )

    output_path = output_dir / f"{input_path.stem}.json"
    save_model(model, output_path)

    console.print(
        Panel(
            f"[bold green]Model saved[/bold green]\n\n"
            f"Output: [cyan]{output_path}[/cyan]",
            title="Done",
        )
    )


if __name__ == "__main__":
    app()
