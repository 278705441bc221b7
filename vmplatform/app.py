import json
import logging
import re
import sys
from wsgiref.simple_server import make_server

from vmplatform.config import Settings, settings as default_settings
from vmplatform.repositories.sqlalchemy.sqlalchemy_audit_repository import SqlalchemyAuditRepository
from vmplatform.repositories.sqlalchemy.sqlalchemy_backup_repository import SqlalchemyBackupRepository
from vmplatform.repositories.sqlalchemy.sqlalchemy_snapshot_repository import SqlalchemySnapshotRepository
from vmplatform.repositories.sqlalchemy.sqlalchemy_template_repository import SqlalchemyTemplateRepository
from vmplatform.repositories.sqlalchemy.sqlalchemy_user_repository import SqlalchemyUserRepository
from vmplatform.repositories.sqlalchemy.sqlalchemy_vm_repository import SqlalchemyVMRepository
from vmplatform.services.action_service import ActionService
from vmplatform.services.audit_service import AuditService
from vmplatform.services.bulk_service import BulkOperationService
from vmplatform.services.compute_service import ComputeService
from vmplatform.services.exceptions import PartialBulkFailureError, PlatformError, TokenInvalidError
from vmplatform.services.identity_service import IdentityService
from vmplatform.services.image_service import ImageService
from vmplatform.services.monitoring_service import MonitoringService
from vmplatform.services.process_supervisor import create_process_supervisor
from vmplatform.services.resource_allocator import ResourceAllocator

logger = logging.getLogger(__name__)

STATUS_BY_CODE = {
    "unauthorized": "401 Unauthorized",
    "not_found": "404 Not Found",
    "forbidden": "403 Forbidden",
    "validation_error": "400 Bad Request",
    "busy": "409 Conflict",
    "resource_exhausted": "409 Conflict",
    "config_missing": "422 Unprocessable Entity",
    "timed_out": "504 Gateway Timeout",
    "partial_bulk_failure": "207 Multi-Status",
}

# --------------------------------------------------------------------------
## Request helpers
# --------------------------------------------------------------------------

def get_request_data(environ):
    try:
        content_length = int(environ.get("CONTENT_LENGTH") or 0)
        data = json.loads(environ["wsgi.input"].read(content_length)) if content_length > 0 else {}
    except (ValueError, json.JSONDecodeError):
        raise ValueError("Invalid or missing JSON body.")
    if not isinstance(data, dict):
        raise ValueError("JSON body must be an object.")
    return data

def authorize_and_get_token_data(environ):
    auth_token = environ.get('HTTP_X_AUTH_TOKEN')
    if not auth_token:
        raise TokenInvalidError("Missing 'X-Auth-Token' header.")
    return environ['services']['identity'].validate_token(auth_token)

def get_origin(environ):
    return environ.get('REMOTE_ADDR') or 'unknown'

def handle_exception(e):
    if isinstance(e, PartialBulkFailureError):
        return STATUS_BY_CODE[e.code], json.dumps({**e.result.to_dict(), "error": e.code})
    if isinstance(e, PlatformError):
        status = STATUS_BY_CODE.get(e.code, "500 Internal Server Error")
        return status, json.dumps({"success": False, "error": e.code, "message": str(e)})
    if isinstance(e, (ValueError, TypeError)):
        return "400 Bad Request", json.dumps({"success": False, "error": "bad_request", "message": str(e)})

    logger.exception("Unhandled error while serving request")
    return "500 Internal Server Error", json.dumps(
        {"success": False, "error": "internal_error", "message": "An internal error occurred."}
    )

# --------------------------------------------------------------------------
## WSGI application (dependency wiring and routing)
# --------------------------------------------------------------------------

def build_services(db_session, settings: Settings, supervisor, allocator):
    vm_repo = SqlalchemyVMRepository(db_session)
    snapshot_repo = SqlalchemySnapshotRepository(db_session)
    backup_repo = SqlalchemyBackupRepository(db_session)
    template_repo = SqlalchemyTemplateRepository(db_session)
    audit_repo = SqlalchemyAuditRepository(db_session)
    user_repo = SqlalchemyUserRepository(db_session)

    image_service = ImageService(allocator, settings)
    compute_service = ComputeService(
        vm_repo, snapshot_repo, backup_repo, template_repo, image_service, supervisor, allocator, settings
    )
    monitoring_service = MonitoringService(
        vm_repo, backup_repo, audit_repo, image_service, supervisor, allocator, settings
    )
    audit_service = AuditService(audit_repo)
    action_service = ActionService(compute_service, monitoring_service, audit_service)

    return {
        'compute': compute_service,
        'actions': action_service,
        'bulk': BulkOperationService(action_service, audit_service),
        'identity': IdentityService(user_repo, settings.token_ttl_minutes),
    }


ROUTES = []


def create_app(settings: Settings = None, session_factory=None, supervisor=None):
    """
    Builds the WSGI callable.

    The hypervisor supervisor is resolved here, once; each request gets a fresh
    database session and its own service graph around it.
    """
    settings = settings or default_settings
    if session_factory is None:
        from vmplatform.database.database import SessionLocal
        session_factory = SessionLocal
    allocator = ResourceAllocator(settings)
    supervisor = supervisor or create_process_supervisor(settings, allocator)

    def application(environ, start_response):
        db_session = session_factory()
        try:
            environ['services'] = build_services(db_session, settings, supervisor, allocator)

            path = environ.get("PATH_INFO", "")
            method = environ.get("REQUEST_METHOD", "")

            handler, path_args = None, []
            for route_method, pattern, route_handler in ROUTES:
                if method == route_method and (match := re.match(pattern, path)):
                    handler, path_args = route_handler, match.groups()
                    break

            if handler:
                status, response_body = handler(environ, *path_args)
            else:
                status, response_body = '404 Not Found', json.dumps(
                    {'success': False, 'error': 'not_found', 'message': 'Not Found'}
                )

        except Exception as e:
            status, response_body = handle_exception(e)
        finally:
            db_session.close()

        start_response(status, [("Content-Type", "application/json")])
        return [response_body.encode("utf-8")]

    application.supervisor = supervisor
    return application

# --------------------------------------------------------------------------
## Handlers
# --------------------------------------------------------------------------

def auth_tokens_handler(environ, *args):
    data = get_request_data(environ)
    token = environ['services']['identity'].authenticate(data.get('username'), data.get('password'))
    return '201 Created', json.dumps(token)

def create_user_handler(environ, *args):
    authorize_and_get_token_data(environ)
    data = get_request_data(environ)
    user = environ['services']['identity'].create_user(data.get('username'), data.get('password'))
    return '201 Created', json.dumps(user)

def list_vms_handler(environ, *args):
    token_data = authorize_and_get_token_data(environ)
    vms = environ['services']['actions'].list_vms(token_data['user_id'])
    return '200 OK', json.dumps({'success': True, 'vms': vms})

def create_vm_handler(environ, *args):
    token_data = authorize_and_get_token_data(environ)
    data = get_request_data(environ)
    result = environ['services']['actions'].create_vm(token_data['user_id'], data, get_origin(environ))
    return '201 Created', json.dumps(result)

def vm_action_handler(environ, vm_id):
    token_data = authorize_and_get_token_data(environ)
    data = get_request_data(environ)
    result = environ['services']['actions'].perform_action(
        token_data['user_id'], vm_id, data.get('action'), data, get_origin(environ)
    )
    return '200 OK', json.dumps(result)

def bulk_action_handler(environ, *args):
    token_data = authorize_and_get_token_data(environ)
    data = get_request_data(environ)
    vm_ids = data.get('vm_ids')
    if not isinstance(vm_ids, list):
        raise ValueError("Missing required parameters")
    result = environ['services']['bulk'].apply_to_all(
        token_data['user_id'], data.get('action'), vm_ids, get_origin(environ)
    )
    result.raise_for_failures()
    return '200 OK', json.dumps(result.to_dict())

def vm_monitoring_handler(environ, vm_id):
    token_data = authorize_and_get_token_data(environ)
    monitoring = environ['services']['actions'].get_monitoring_snapshot(token_data['user_id'], vm_id)
    return '200 OK', json.dumps({'success': True, 'monitoring': monitoring})

def list_snapshots_handler(environ, vm_id):
    token_data = authorize_and_get_token_data(environ)
    snapshots = environ['services']['actions'].list_snapshots(token_data['user_id'], vm_id)
    return '200 OK', json.dumps({'success': True, 'snapshots': snapshots})

def list_backups_handler(environ, vm_id):
    token_data = authorize_and_get_token_data(environ)
    backups = environ['services']['actions'].list_backups(token_data['user_id'], vm_id)
    return '200 OK', json.dumps({'success': True, 'backups': backups})

def host_stats_handler(environ, *args):
    authorize_and_get_token_data(environ)
    stats = environ['services']['actions'].get_host_stats()
    return '200 OK', json.dumps({'success': True, 'stats': stats})

def dashboard_handler(environ, *args):
    token_data = authorize_and_get_token_data(environ)
    stats = environ['services']['actions'].get_dashboard_stats(token_data['user_id'])
    return '200 OK', json.dumps({'success': True, 'stats': stats})

def reconcile_vms_handler(environ, *args):
    authorize_and_get_token_data(environ)
    changed = environ['services']['compute'].reconcile_vms()
    return '200 OK', json.dumps({'success': True, 'reconciled': changed})


VM_ID = r'(vm_[0-9a-f]+)'

ROUTES.extend([
    ('POST', r'^/v1/auth/tokens$', auth_tokens_handler),
    ('POST', r'^/v1/users$', create_user_handler),
    ('GET', r'^/v1/vms$', list_vms_handler),
    ('POST', r'^/v1/vms$', create_vm_handler),
    ('POST', r'^/v1/vms/actions$', bulk_action_handler),
    ('POST', rf'^/v1/vms/{VM_ID}/actions$', vm_action_handler),
    ('GET', rf'^/v1/vms/{VM_ID}/monitoring$', vm_monitoring_handler),
    ('GET', rf'^/v1/vms/{VM_ID}/snapshots$', list_snapshots_handler),
    ('GET', rf'^/v1/vms/{VM_ID}/backups$', list_backups_handler),
    ('GET', r'^/v1/host/stats$', host_stats_handler),
    ('GET', r'^/v1/dashboard$', dashboard_handler),
    ('POST', r'^/v1/actions/reconcile$', reconcile_vms_handler),
])

# --------------------------------------------------------------------------
## Server
# --------------------------------------------------------------------------

if __name__ == "__main__":
    logging.basicConfig(
        level=default_settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        from vmplatform.database.db_init import initialize_db

        initialize_db()
        with make_server("", 8000, create_app()) as httpd:
            logger.info("Serving VM platform on port 8000...")
            httpd.serve_forever()
    except Exception as e:
        print(f"Error starting server: {e}", file=sys.stderr)
