import logging
from decimal import Decimal

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from app.errors import AlreadyReviewed, Forbidden, InvalidRequest
from app.services.metering import load_session
from app.utils.money import round2
from models.reader import Reader
from models.review import Review
from models.session import STATUS_COMPLETED

logger = logging.getLogger("soulseer.reviews")


async def create_review(session_factory, session_id: str, client_id: str, rating: int, comment: str | None = None) -> Review:
    if rating < 1 or rating > 5:
        raise InvalidRequest("Rating must be between 1 and 5")
    async with session_factory() as db:
        session = await load_session(db, session_id)
        if session.client_id != client_id:
            raise Forbidden("Only the client of a session can review it")
        if session.status != STATUS_COMPLETED:
            raise InvalidRequest("Only completed sessions can be reviewed")
        reader_id = session.reader_id
        review = Review(
            session_id=session_id,
            client_id=client_id,
            reader_id=reader_id,
            rating=rating,
            comment=(comment or "").strip() or None,
        )
        db.add(review)
        try:
            await db.flush()
        except IntegrityError:
            await db.rollback()
            raise AlreadyReviewed()

        avg_rating, count = (await db.execute(
            select(func.avg(Review.rating), func.count(Review.id)).where(Review.reader_id == reader_id)
        )).one()
        await db.execute(
            update(Reader)
            .where(Reader.id == reader_id)
            .values(rating=round2(Decimal(str(avg_rating or 0))), review_count=count)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        await db.refresh(review)
    logger.info("REVIEW session=%s reader=%s rating=%s", session_id, reader_id, rating)
    return review