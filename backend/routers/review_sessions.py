from fastapi import APIRouter, Depends

from services.review_session import ReviewSessionEngine


def get_engine() -> ReviewSessionEngine:
    from main import review_engine

    return review_engine


router = APIRouter(prefix='/api/review-sessions')


@router.post('')
def create_session(body: dict, rs: ReviewSessionEngine = Depends(get_engine)):
    return rs.create_review_session(body.get('draft_id', ''), body.get('specialist_id', ''))


@router.get('/{session_id}')
def get_session(session_id: str, rs: ReviewSessionEngine = Depends(get_engine)):
    return rs.get_session(session_id)


@router.post('/{session_id}/messages')
async def send_message(session_id: str, body: dict, rs: ReviewSessionEngine = Depends(get_engine)):
    return await rs.send_message(session_id, body.get('content', ''), body.get('specialist_id', ''))


@router.post('/{session_id}/proposals/{proposal_id}/apply')
def apply_proposal(session_id: str, proposal_id: str, body: dict, rs: ReviewSessionEngine = Depends(get_engine)):
    return rs.apply_proposal(session_id, proposal_id, body.get('specialist_id', ''))


@router.post('/{session_id}/proposals/{proposal_id}/reject')
def reject_proposal(session_id: str, proposal_id: str, body: dict, rs: ReviewSessionEngine = Depends(get_engine)):
    return rs.reject_proposal(session_id, proposal_id, body.get('specialist_id', ''))
