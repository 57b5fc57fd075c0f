"""Dark-theme plots of within-host trajectories.

Provides consistent colors and a theme-application helper, plus
plot_density_trajectory() for HostTrajectoryResult.
"""

from __future__ import annotations

from typing import Optional, TYPE_CHECKING

import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt
import numpy as np

if TYPE_CHECKING:
    from plasmodyn.model import HostTrajectoryResult


# ═══════════════════════════════════════════════════════════════════════
# COLOR PALETTE
# ═══════════════════════════════════════════════════════════════════════

DARK_BG = '#1a1a2e'
DARK_PANEL = '#16213e'
TEXT_COLOR = '#e0e0e0'
GRID_COLOR = '#2a2a4a'

DENSITY_COLOR = '#e94560'
DETECTION_COLOR = '#f39c12'

DRUG_COLORS = [
    '#48c9b0', '#3498db', '#2ecc71', '#533483', '#f1c40f',
]


def apply_dark_theme(fig=None, ax=None):
    """Apply dark theme to a matplotlib Figure and/or Axes."""
    if fig is not None:
        fig.patch.set_facecolor(DARK_BG)
    if ax is not None:
        ax.set_facecolor(DARK_PANEL)
        ax.tick_params(colors=TEXT_COLOR)
        ax.xaxis.label.set_color(TEXT_COLOR)
        ax.yaxis.label.set_color(TEXT_COLOR)
        ax.title.set_color(TEXT_COLOR)
        for spine in ax.spines.values():
            spine.set_color(GRID_COLOR)
        ax.grid(True, color=GRID_COLOR, alpha=0.3, linewidth=0.5)


def save_figure(fig, save_path, dpi=150):
    """Save a figure with tight layout and dark background."""
    fig.tight_layout()
    fig.savefig(save_path, dpi=dpi, facecolor=fig.get_facecolor(),
                edgecolor='none', bbox_inches='tight')
    plt.close(fig)


def plot_density_trajectory(
    result: 'HostTrajectoryResult',
    title: str = 'Parasite density',
    save_path: Optional[str] = None,
) -> plt.Figure:
    """Total parasite density (log scale) with the detection limit.

    Drug concentrations, if any were recorded, go on a secondary axis.

    Args:
        result: Output of simulate_host().
        title: Axes title.
        save_path: Optional path to save figure.

    Returns:
        matplotlib Figure.
    """
    fig, ax = plt.subplots(figsize=(12, 6))
    apply_dark_theme(fig=fig, ax=ax)

    days = np.arange(result.n_days)
    # Zero densities are gaps on a log axis
    density = np.where(result.total_density > 0, result.total_density, np.nan)
    ax.plot(days, density, color=DENSITY_COLOR, linewidth=1.5,
            label='Total density')
    if result.detection_limit > 0:
        ax.axhline(result.detection_limit, color=DETECTION_COLOR, linestyle=':',
                   linewidth=1.5, label='Detection limit')
    ax.set_yscale('log')
    ax.set_xlabel('Day', fontsize=12)
    ax.set_ylabel('Parasites / µl', fontsize=12)
    ax.set_title(title, fontsize=15, fontweight='bold')

    handles, labels = ax.get_legend_handles_labels()
    if result.concentrations:
        ax2 = ax.twinx()
        ax2.tick_params(colors=TEXT_COLOR)
        ax2.yaxis.label.set_color(TEXT_COLOR)
        for i, (name, conc) in enumerate(result.concentrations.items()):
            ax2.plot(days, conc, color=DRUG_COLORS[i % len(DRUG_COLORS)],
                     linewidth=1.2, alpha=0.8, label=f'{name} (mg/l)')
        ax2.set_ylabel('Concentration (mg/l)', fontsize=12)
        h2, l2 = ax2.get_legend_handles_labels()
        handles += h2
        labels += l2

    ax.legend(handles, labels, facecolor=DARK_PANEL, edgecolor=GRID_COLOR,
              labelcolor=TEXT_COLOR, fontsize=10, loc='upper right')

    if save_path:
        save_figure(fig, save_path)
    return fig
