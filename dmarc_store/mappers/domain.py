import logging
from typing import List, Optional, Union

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from dmarc_store.exceptions import NotFoundError, ValidationError, storage_error_from
from dmarc_store.models import Domain, Report, utc_now
from dmarc_store.schemas import DomainData

logger = logging.getLogger(__name__)

AUTO_DESCRIPTION = "The domain was added automatically."


class DomainMapper:
    """Storage of the domains that own reports"""

    def __init__(self, db: Session):
        self.db = db

    def _find(self, key: Union[int, str]) -> Optional[Domain]:
        query = self.db.query(Domain)
        if isinstance(key, int) and not isinstance(key, bool):
            query = query.filter(Domain.id == key)
        else:
            query = query.filter(Domain.fqdn == str(key).strip().lower())
        try:
            return query.one_or_none()
        except SQLAlchemyError as e:
            raise storage_error_from(e, "Failed to fetch the domain data")

    def find(self, key: Union[int, str]) -> Optional[Domain]:
        """Domain row by id or name, None when there is no such domain"""
        return self._find(key)

    def exists(self, key: Union[int, str]) -> bool:
        return self._find(key) is not None

    def fetch(self, key: Union[int, str]) -> DomainData:
        domain = self._find(key)
        if domain is None:
            raise NotFoundError("Domain not found")
        return DomainData.model_validate(domain)

    def domain_id(self, fqdn: str) -> int:
        """Id of a domain by its name; used to resolve the domain filter"""
        return self.fetch(fqdn).id

    def add(self, fqdn: str, active: bool = True, description: Optional[str] = AUTO_DESCRIPTION) -> Domain:
        """
        Insert a domain into the current transaction without committing

        The caller owns the transaction; the row gets its id on flush.
        """
        now = utc_now()
        domain = Domain(
            fqdn=fqdn.strip().lower(),
            active=active,
            description=description,
            created_time=now,
            updated_time=now,
        )
        self.db.add(domain)
        self.db.flush()
        return domain

    def save(self, data: DomainData) -> DomainData:
        """Update an existing domain or insert a new one"""
        try:
            domain = self._find(data.id if data.id is not None else data.fqdn)
            if domain is None:
                domain = self.add(data.fqdn, active=data.active, description=data.description)
                logger.info(f"Domain {domain.fqdn} added")
            else:
                domain.active = data.active
                domain.description = data.description
                domain.updated_time = utc_now()
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise storage_error_from(e, "Failed to save the domain data")
        self.db.refresh(domain)
        return DomainData.model_validate(domain)

    def delete(self, key: Union[int, str]):
        """Delete a domain that has no reports"""
        domain = self._find(key)
        if domain is None:
            raise NotFoundError("Domain not found")
        try:
            r_count = self.db.query(func.count(Report.id)).filter(Report.domain_id == domain.id).scalar()
            if r_count > 0:
                s1, s2 = ("is", "") if r_count == 1 else ("are", "s")
                raise ValidationError(
                    f"Failed to delete: there {s1} {r_count} incoming report{s2} for this domain"
                )
            self.db.delete(domain)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise storage_error_from(e, "Failed to delete the domain")
        logger.info(f"Domain {domain.fqdn} deleted")

    def list(self) -> List[DomainData]:
        try:
            domains = self.db.query(Domain).order_by(Domain.fqdn).all()
        except SQLAlchemyError as e:
            raise storage_error_from(e, "Failed to get the domain list")
        return [DomainData.model_validate(d) for d in domains]

    def names(self) -> List[str]:
        try:
            return [row.fqdn for row in self.db.query(Domain.fqdn).order_by(Domain.fqdn)]
        except SQLAlchemyError as e:
            raise storage_error_from(e, "Failed to get a list of domain names")

    def count(self, max: int = 0) -> int:
        """Number of domains; with max > 0 counting stops at max"""
        try:
            query = self.db.query(Domain.id)
            if max > 0:
                query = query.limit(max)
            return self.db.query(func.count()).select_from(query.subquery()).scalar()
        except SQLAlchemyError as e:
            raise storage_error_from(e, "Failed to get the number of domains")
