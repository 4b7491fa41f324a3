from fastapi import APIRouter, Depends

from services.brief_service import BriefService
from services.contract_service import ContractService
from services.draft_lifecycle import DraftLifecycle
from services.errors import ValidationError


def get_briefs() -> BriefService:
    from main import brief_service

    return brief_service


def get_contracts() -> ContractService:
    from main import contract_service

    return contract_service


def get_lifecycle() -> DraftLifecycle:
    from main import draft_lifecycle

    return draft_lifecycle


router = APIRouter(prefix='/api/briefs')


@router.post('')
def create_brief(body: dict, bs: BriefService = Depends(get_briefs)):
    return bs.create_brief(body)


@router.get('')
def list_briefs(bs: BriefService = Depends(get_briefs)):
    return bs.list_briefs()


@router.post('/preview')
def preview_unsaved(body: dict, version: str | None = None, cs: ContractService = Depends(get_contracts)):
    return cs.preview_brief(body, version).to_dict()


@router.get('/{brief_id}')
def get_brief(brief_id: str, bs: BriefService = Depends(get_briefs)):
    return bs.get_brief(brief_id)


@router.get('/{brief_id}/contract')
def preview_contract(brief_id: str, cs: ContractService = Depends(get_contracts)):
    return cs.preview_contract(brief_id).to_dict()


@router.post('/{brief_id}/override')
def apply_override(brief_id: str, body: dict, cs: ContractService = Depends(get_contracts)):
    tool = body.get('coping_tool_id')
    if not tool:
        raise ValidationError('coping_tool_id is required', field='coping_tool_id')
    return cs.apply_override(brief_id, tool, body.get('reason')).to_dict()


@router.delete('/{brief_id}/override')
def clear_override(brief_id: str, cs: ContractService = Depends(get_contracts)):
    return cs.clear_override(brief_id).to_dict()


@router.get('/{brief_id}/override/history')
def override_history(brief_id: str, cs: ContractService = Depends(get_contracts)):
    return cs.override_history(brief_id)


@router.post('/{brief_id}/generate-draft')
async def generate_draft(brief_id: str, body: dict | None = None, dl: DraftLifecycle = Depends(get_lifecycle)):
    body = body or {}
    return await dl.generate_draft(
        brief_id,
        requested_by=body.get('requested_by'),
        length=body.get('length', 'medium'),
        tone=body.get('tone', 'calm'),
        language=body.get('language'),
    )
