# Models package
from app.models.deployment import Deployment
from app.models.reservation import PortReservation, SubdomainReservation
