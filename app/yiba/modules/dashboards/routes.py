from flask import Blueprint

from app.yiba.constants import PLATFORM_ADMIN, QCTO_ROLES
from app.yiba.db import db_session
from app.yiba.modules.dashboards.service import dashboard_for, qcto_stats
from app.yiba.rbac import require_auth, require_roles
from app.yiba.utils import current_user

bp = Blueprint("dashboards", __name__)


@bp.get("/dashboard")
@require_auth
def dashboard():
    s = db_session()
    return dashboard_for(s, current_user())


@bp.get("/qcto/stats")
@require_roles(PLATFORM_ADMIN, *QCTO_ROLES)
def qcto_dashboard_stats():
    s = db_session()
    return qcto_stats(s, current_user())
