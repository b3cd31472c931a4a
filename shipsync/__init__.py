"""ShipStation shipment export pipeline"""

__version__ = "2.11.0"
