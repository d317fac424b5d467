import html
import logging
import math
from pathlib import Path
from typing import NamedTuple, Optional

import numpy as np
import pandas as pd
import plotly.graph_objects as go
import streamlit as st
from plotly.subplots import make_subplots

logger = logging.getLogger(__name__)

# ====================== model configuration ======================
class RemediationParams(NamedTuple):
    """Coefficients of the Alyssum-nickel remediation model.

    Attributes:
        r (float): Intrinsic growth rate of the biomass (1/year).
        K (float): Carrying capacity of the biomass (kg/ha).
        c (float): Maximum toxicity-induced mortality rate (1/year).
        b_tox (float): Half-saturation nickel level for toxicity (mg/kg).
        u (float): Uptake coefficient of nickel by biomass (ha/(kg*year)).
        delta (float): Nickel source term per unit biomass.
        l (float): Leaching/decay rate of nickel (1/year).
    """
    r: float
    K: float
    c: float
    b_tox: float
    u: float
    delta: float
    l: float


DEFAULT_PARAMS = RemediationParams(r=2.0, K=8000, c=0.8, b_tox=7500, u=1 / 50000, delta=0, l=0.03)
T_SPAN = (0.0, 150.0)  # years
DT = 0.1  # time step for the solver
N_SAFE = 75.0  # safe nickel level (mg/kg)
DEFAULT_INITIAL_A = 100.0
DEFAULT_INITIAL_N = 5000.0

ARTICLES_PATH = Path(__file__).with_name("articles.csv")
FALLBACK_IMAGE_URL = "https://placehold.co/600x400/cccccc/ffffff?text=Image+Not+Found"

COLORS = {'nickel': '#8C564B', 'biomass': '#2CA02C', 'phase': '#D62728'}


class InvalidConfigurationError(ValueError):
    """Raised when a run is configured so that the integrator cannot terminate."""


# ====================== core simulator ======================
def remediation_model(t, state, params=DEFAULT_PARAMS):
    """Remediation differential equations for biomass and soil nickel.

    The toxicity term assumes N >= 0 and b_tox > 0; ``b_tox + N == 0`` is not guarded.

    Args:
        t (float): Current time (unused, for compatibility with solvers).
        state (np.array): Current values [A, N].
        params (RemediationParams): Model coefficients.

    Returns:
        np.array: Derivatives [dA/dt, dN/dt].
    """
    A, N = state
    dAdt = params.r * A * (1 - A / params.K) - params.c * N * A / (params.b_tox + N)
    dNdt = -params.u * A * N + params.delta * A - params.l * N
    return np.array([dAdt, dNdt])


class Trajectory(NamedTuple):
    """Time series produced by one integration run. Arrays are read-only."""
    t: np.ndarray
    A: np.ndarray
    N: np.ndarray

    def to_frame(self):
        return pd.DataFrame({
            'Waktu (tahun)': self.t,
            'Biomassa Alyssum (kg/ha)': self.A,
            'Kadar Nikel (mg/kg)': self.N,
        })


def _frozen(values):
    arr = np.array(values, dtype=float)
    arr.setflags(write=False)
    return arr


def solve_rk4(model, y0, t_span, dt):
    """Integrate a two-variable system with the classical fixed-step runge-kutta method.

    Each iteration records the current state before advancing, so the first sample is
    the initial condition and sampling continues while ``t <= t_span[1]``. Time is
    accumulated by repeated addition of ``dt``. There is no error control: a step that
    is too large for the dynamics can diverge without warning.

    Args:
        model (callable): Derivative function ``model(t, y)``.
        y0 (sequence): Initial values [A, N].
        t_span (tuple): Time interval (t_start, t_end).
        dt (float): Time step size.

    Returns:
        Trajectory: Recorded time, A and N values.

    Raises:
        InvalidConfigurationError: If ``dt`` is not a positive finite number.
    """
    if not math.isfinite(dt) or dt <= 0:
        raise InvalidConfigurationError(f"Time step must be a positive finite number, got {dt!r}")

    t_values, A_values, N_values = [], [], []
    t = t_span[0]
    y = np.array(y0, dtype=float)

    # nan initial conditions are allowed to propagate
    with np.errstate(invalid='ignore', divide='ignore'):
        while t <= t_span[1]:
            t_values.append(t)
            A_values.append(y[0])
            N_values.append(y[1])

            k1 = model(t, y)
            k2 = model(t + 0.5 * dt, y + 0.5 * dt * k1)
            k3 = model(t + 0.5 * dt, y + 0.5 * dt * k2)
            k4 = model(t + dt, y + dt * k3)

            y = y + dt / 6 * (k1 + 2 * k2 + 2 * k3 + k4)
            t += dt

    return Trajectory(_frozen(t_values), _frozen(A_values), _frozen(N_values))


class RemediationSimulator:
    """Simulates nickel phytoremediation by Alyssum biomass.

    Attributes:
        params (RemediationParams): Model coefficients.
        initial_conditions (np.array): Initial values [A, N].
        t_span (tuple): Time range (start, end) for simulation.
        dt (float): Time step size.
    """
    def __init__(self, params=DEFAULT_PARAMS):
        self.params = params
        self.initial_conditions = np.array([DEFAULT_INITIAL_A, DEFAULT_INITIAL_N])
        self.t_span = T_SPAN
        self.dt = DT

    def remediation_model(self, t, state):
        return remediation_model(t, state, self.params)

    def solve(self):
        logger.debug("Solving with params=%s y0=%s t_span=%s dt=%s",
                     self.params, self.initial_conditions, self.t_span, self.dt)
        return solve_rk4(self.remediation_model, self.initial_conditions, self.t_span, self.dt)


# ====================== outcome analysis ======================
class RemediationOutcome(NamedTuple):
    time_to_safe: Optional[float]  # None when the threshold is not reached
    horizon: float
    threshold: float

    @property
    def reached(self):
        return self.time_to_safe is not None


def find_first_below_threshold(n_values, t_values, threshold):
    """Return the time of the first sample with ``N <= threshold``, or None if there is none."""
    for n, t in zip(n_values, t_values):
        if n <= threshold:
            return float(t)
    return None


def analyze_outcome(trajectory, threshold=N_SAFE, horizon=T_SPAN[1]):
    time_to_safe = find_first_below_threshold(trajectory.N, trajectory.t, threshold)
    return RemediationOutcome(time_to_safe, horizon, threshold)


def interpret_outcome(outcome):
    """Build the plain-language summary shown under the simulation form."""
    if outcome.reached:
        return (
            f"Berdasarkan simulasi, kadar nikel di lahan diprediksi akan mencapai ambang batas aman "
            f"({outcome.threshold:g} mg/kg) setelah sekitar {outcome.time_to_safe:.2f} tahun."
        )
    return (
        f"Dengan kondisi ini, kadar nikel tidak mencapai batas aman ({outcome.threshold:g} mg/kg) "
        f"dalam {outcome.horizon:g} tahun. Diperlukan waktu lebih lama atau intervensi tambahan."
    )


def run_simulation(initial_A, initial_N, params=DEFAULT_PARAMS, t_span=T_SPAN, dt=DT, threshold=N_SAFE):
    """Run one simulation from the form values.

    Args:
        initial_A (float): Initial Alyssum biomass (kg/ha).
        initial_N (float): Initial soil nickel (mg/kg).
        params (RemediationParams): Model coefficients.
        t_span (tuple): Time interval (start, end) in years.
        dt (float): Time step size.
        threshold (float): Safe nickel level.

    Returns:
        tuple: (Trajectory, RemediationOutcome).
    """
    simulator = RemediationSimulator(params)
    simulator.initial_conditions = np.array([initial_A, initial_N], dtype=float)
    simulator.t_span = t_span
    simulator.dt = dt

    trajectory = simulator.solve()
    outcome = analyze_outcome(trajectory, threshold=threshold, horizon=t_span[1])
    if outcome.reached:
        logger.info("Safe level %.1f reached after %.2f years (%d samples)",
                    threshold, outcome.time_to_safe, len(trajectory.t))
    else:
        logger.info("Safe level %.1f not reached within %s years", threshold, t_span[1])
    return trajectory, outcome


# ====================== visualization functions ======================
def create_time_series_plot(trajectory):
    """Plot nickel and biomass over time on two y axes.

    Args:
        trajectory (Trajectory): Simulation result.

    Returns:
        go.Figure: Plotly figure with nickel on the left axis and biomass on the right.
    """
    fig = make_subplots(specs=[[{"secondary_y": True}]])

    fig.add_trace(go.Scatter(x=trajectory.t, y=trajectory.N, name='Kadar Nikel (N)',
                             line=dict(color=COLORS['nickel'], width=2),
                             hovertemplate="Waktu: %{x:.1f} tahun<br>Nikel: %{y:.1f} mg/kg"),
                  secondary_y=False)
    fig.add_trace(go.Scatter(x=trajectory.t, y=trajectory.A, name='Biomassa Alyssum (A)',
                             line=dict(color=COLORS['biomass'], width=2, dash='dash'),
                             hovertemplate="Waktu: %{x:.1f} tahun<br>Biomassa: %{y:.1f} kg/ha"),
                  secondary_y=True)

    fig.update_layout(
        title="Dinamika Nikel dan Biomassa",
        xaxis_title="Waktu (tahun)",
        hovermode="x unified",
        template="plotly_white",
        height=500,
        legend=dict(orientation="h", yanchor="bottom", y=1.02, xanchor="center", x=0.5)
    )
    fig.update_yaxes(title_text="Kadar Nikel (mg/kg)", color=COLORS['nickel'],
                     rangemode="tozero", secondary_y=False)
    fig.update_yaxes(title_text="Biomassa Alyssum (kg/ha)", color=COLORS['biomass'],
                     rangemode="tozero", showgrid=False, secondary_y=True)
    return fig


def create_phase_plot(trajectory):
    """Plot the system trajectory in the (A, N) phase plane."""
    fig = go.Figure()
    fig.add_trace(go.Scatter(
        x=trajectory.A, y=trajectory.N,
        name='Lintasan Sistem',
        mode='lines',
        line=dict(color=COLORS['phase'], width=2),
        hovertemplate="Biomassa: %{x:.1f}<br>Nikel: %{y:.1f}"
    ))
    fig.update_layout(
        title="Potret Fase",
        xaxis_title="Biomassa Alyssum (A) (kg/ha)",
        yaxis_title="Kadar Nikel (N) (mg/kg)",
        template="plotly_white",
        height=500,
        xaxis=dict(rangemode="tozero"),
        yaxis=dict(rangemode="tozero"),
        legend=dict(orientation="h", yanchor="bottom", y=1.02, xanchor="center", x=0.5)
    )
    return fig


# ====================== articles ======================
def load_articles(path=ARTICLES_PATH):
    """Load the reading list shown at the bottom of the page.

    Returns:
        list: One dict per article with title, description, image_url and link_url.
    """
    df = pd.read_csv(path, dtype=str).fillna("")
    return df[['title', 'description', 'image_url', 'link_url']].to_dict(orient='records')


def render_article_cards(articles):
    cards = []
    for article in articles:
        title = html.escape(article['title'])
        cards.append(f"""
            <div class="article-card">
                <a href="{html.escape(article['link_url'])}" target="_blank" rel="noopener noreferrer">
                    <img src="{html.escape(article['image_url'])}" alt="{title}" onerror="this.onerror=null;this.src='{FALLBACK_IMAGE_URL}';">
                    <div class="card-content">
                        <h3>{title}</h3>
                        <p>{html.escape(article['description'])}</p>
                    </div>
                </a>
            </div>""")
    return '<div class="articles-grid">' + "".join(cards) + "\n</div>"


# ====================== logging ======================
def setup_logging(level=logging.INFO):
    """Send this module's records to stderr, next to the streamlit server log.

    Streamlit reruns the page script on every interaction, so the handler is only
    attached once.
    """
    logger.setLevel(level)
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s"))
        logger.addHandler(handler)


# ====================== streamlit app ======================
def main():
    """Main function to run the Streamlit phytoremediation page.

    The user enters the initial biomass and nickel level, the model is integrated over
    the fixed horizon, and the page reports when the soil reaches the safe level.
    """
    setup_logging()
    st.set_page_config(page_title="Simulasi Fitoremediasi Nikel", layout="wide")
    st.markdown("""
        <style>
        .main {padding: 1rem;}
        .articles-grid {display: grid; grid-template-columns: repeat(auto-fill, minmax(260px, 1fr)); gap: 1rem;}
        .article-card {border: 1px solid #e0e0e0; border-radius: 8px; overflow: hidden;}
        .article-card a {color: inherit; text-decoration: none;}
        .article-card img {width: 100%; height: 160px; object-fit: cover;}
        .card-content {padding: 0.75rem;}
        @media (max-width: 600px) {
            .main {padding: 0.5rem;}
        }
        </style>
    """, unsafe_allow_html=True)

    st.title("🌿 Simulasi Pemulihan Lahan Bekas Tambang Nikel")
    st.markdown("""
    **Fitoremediasi dengan tanaman hiperakumulator Alyssum**

    Masukkan kondisi awal lahan untuk memperkirakan berapa lama biomassa Alyssum
    menurunkan kadar nikel tanah hingga ambang batas aman.
    """)

    with st.form("simulation-form"):
        cols = st.columns(2)
        initial_A = cols[0].number_input("Biomassa Awal Alyssum (A) (kg/ha)", min_value=0.0,
                                         value=DEFAULT_INITIAL_A, step=10.0)
        initial_N = cols[1].number_input("Kadar Nikel Awal (N) (mg/kg)", min_value=0.0,
                                         value=DEFAULT_INITIAL_N, step=100.0)
        submitted = st.form_submit_button("Simulasikan Pemulihan")

    if submitted:
        try:
            with st.spinner("Menjalankan Simulasi..."):
                trajectory, outcome = run_simulation(initial_A, initial_N)
        except Exception as e:
            logger.exception("Simulation error")
            st.error(f"Terjadi kesalahan saat simulasi: {e}")
        else:
            st.subheader("Hasil Simulasi")
            st.info(interpret_outcome(outcome))

            cols = st.columns(2)
            cols[0].plotly_chart(create_time_series_plot(trajectory), use_container_width=True)
            cols[1].plotly_chart(create_phase_plot(trajectory), use_container_width=True)

            with st.expander("📊 DATA SIMULASI", expanded=False):
                df = trajectory.to_frame()
                st.dataframe(df, use_container_width=True)
                st.download_button("Unduh CSV", df.to_csv(index=False).encode('utf-8'),
                                   file_name="simulasi_fitoremediasi.csv", mime="text/csv")

    with st.expander("🧮 MODEL MATEMATIS", expanded=False):
        p = DEFAULT_PARAMS
        st.markdown(rf"""
        $\frac{{dA}}{{dt}} = rA\left(1 - \frac{{A}}{{K}}\right) - \frac{{cNA}}{{b_{{tox}} + N}}$

        $\frac{{dN}}{{dt}} = -uAN + \delta A - lN$

        | Parameter | Nilai | Arti |
        |-----------|-------|------|
        | $r$ | {p.r:g} | Laju pertumbuhan intrinsik Alyssum |
        | $K$ | {p.K:g} | Daya dukung biomassa (kg/ha) |
        | $c$ | {p.c:g} | Laju kematian maksimum akibat toksisitas |
        | $b_{{tox}}$ | {p.b_tox:g} | Kadar nikel setengah-jenuh toksisitas |
        | $u$ | {p.u:g} | Koefisien serapan nikel oleh biomassa |
        | $\delta$ | {p.delta:g} | Sumber nikel per biomassa |
        | $l$ | {p.l:g} | Laju pelindian nikel |

        Diselesaikan dengan metode Runge-Kutta orde 4 langkah tetap ($\Delta t = {DT:g}$)
        pada rentang {T_SPAN[0]:g} sampai {T_SPAN[1]:g} tahun. Ambang batas aman: {N_SAFE:g} mg/kg.
        """)

    st.divider()
    st.header("Artikel Terkait")
    try:
        articles = load_articles()
    except (OSError, KeyError) as e:
        logger.exception("Could not load articles from %s", ARTICLES_PATH)
        st.warning(f"Daftar artikel tidak dapat dimuat: {e}")
    else:
        st.markdown(render_article_cards(articles), unsafe_allow_html=True)
