from fastapi import APIRouter, Depends

from services.draft_lifecycle import DraftLifecycle


def get_lifecycle() -> DraftLifecycle:
    from main import draft_lifecycle

    return draft_lifecycle


router = APIRouter(prefix='/api/drafts')


@router.get('/{draft_id}')
def get_draft(draft_id: str, dl: DraftLifecycle = Depends(get_lifecycle)):
    return dl.get_draft(draft_id)


@router.get('/{draft_id}/contract')
def get_draft_contract(draft_id: str, dl: DraftLifecycle = Depends(get_lifecycle)):
    return dl.draft_contract(draft_id)


@router.get('/{draft_id}/events')
def get_draft_events(draft_id: str, dl: DraftLifecycle = Depends(get_lifecycle)):
    return dl.list_events(draft_id)


@router.post('/{draft_id}/edit')
def enter_edit_mode(draft_id: str, body: dict | None = None, dl: DraftLifecycle = Depends(get_lifecycle)):
    return dl.enter_edit_mode(draft_id, by=(body or {}).get('by'))


@router.post('/{draft_id}/cancel-edit')
def cancel_edit_mode(draft_id: str, body: dict | None = None, dl: DraftLifecycle = Depends(get_lifecycle)):
    return dl.cancel_edit_mode(draft_id, by=(body or {}).get('by'))


@router.put('/{draft_id}')
def update_draft(draft_id: str, body: dict, dl: DraftLifecycle = Depends(get_lifecycle)):
    return dl.update_draft(draft_id, title=body.get('title'), pages=body.get('pages'), by=body.get('by'))


@router.post('/{draft_id}/approve')
def approve_draft(draft_id: str, body: dict, dl: DraftLifecycle = Depends(get_lifecycle)):
    return dl.approve_draft(draft_id, body.get('specialist_id', ''), session_id=body.get('session_id'))
