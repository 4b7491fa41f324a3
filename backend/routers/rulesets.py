from fastapi import APIRouter, Depends

from services.errors import ValidationError
from services.ruleset_service import TABLES, RuleSetService


def get_rulesets() -> RuleSetService:
    from main import ruleset_service

    return ruleset_service


router = APIRouter(prefix='/api/rulesets')


@router.get('')
def list_rulesets(rs: RuleSetService = Depends(get_rulesets)):
    return rs.list_versions()


@router.get('/default')
def get_default(rs: RuleSetService = Depends(get_rulesets)):
    return rs.get(rs.default_version()).to_dict()


@router.post('')
def publish_ruleset(body: dict, rs: RuleSetService = Depends(get_rulesets)):
    version = body.get('version')
    if not version:
        raise ValidationError('version is required', field='version')
    rules = rs.publish(version, {t: body.get(t, {}) for t in TABLES}, notes=body.get('notes', ''))
    if body.get('make_default'):
        rs.set_default(version)
    return rs.get(rules.version).to_dict()


@router.get('/{version}')
def get_ruleset(version: str, rs: RuleSetService = Depends(get_rulesets)):
    return rs.get(version).to_dict()


@router.post('/{version}/default')
def make_default(version: str, rs: RuleSetService = Depends(get_rulesets)):
    return rs.set_default(version)


@router.post('/{version}/retire')
def retire_ruleset(version: str, rs: RuleSetService = Depends(get_rulesets)):
    return rs.retire(version)
