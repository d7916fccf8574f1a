import json
from html import escape

from .config import PROJECT_ROOT

UI_TEMPLATE_PATH = PROJECT_ROOT / "templates" / "index.html"


def _load_ui_html_template() -> str:
    if not UI_TEMPLATE_PATH.exists():
        raise RuntimeError(f"UI template not found at {UI_TEMPLATE_PATH}")
    return UI_TEMPLATE_PATH.read_text(encoding="utf-8")


def _model_options(state: dict) -> str:
    active = state.get("model_id") or ""
    models = list(state.get("available_models") or [])
    if active and active not in models:
        models.insert(0, active)
    options = []
    for model_id in models:
        selected = " selected" if model_id == active else ""
        options.append(f'<option value="{escape(model_id)}"{selected}>{escape(model_id)}</option>')
    return "\n".join(options)


def render_ui_html(state: dict) -> str:
    html = _load_ui_html_template()
    # Embedded in a <script> block, so "</" must not appear verbatim.
    initial_state = json.dumps(state).replace("</", "<\\/")
    return (
        html.replace("__MODEL_OPTIONS__", _model_options(state))
        .replace("__MODEL_ID_VALUE__", escape(state.get("model_id") or ""))
        .replace("__DEVICE_VALUE__", escape(state.get("device") or ""))
        .replace("__INITIAL_STATE__", initial_state)
    )
