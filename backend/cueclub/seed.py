import json
from decimal import Decimal

from cueclub import db
from cueclub.models import Club, InventoryItem, Member, PoolTable, TablePricing


def seed_demo_club(name='CueMaster Club'):
    """Create a ready-to-use club: pricing, four tables, a small bar menu and members."""
    club = Club(name=name, settings=json.dumps({'is_open': True, 'gst_enabled': False, 'gst_rate': 18}))
    db.session.add(club)
    db.session.flush()

    db.session.add(TablePricing(club_id=club.id, time_zone='Asia/Kolkata'))

    tables = [
        dict(table_number=1, table_name='Table 1', table_type='Snooker', billing_mode='hourly'),
        dict(table_number=2, table_name='Table 2', table_type='Snooker', billing_mode='per_minute'),
        dict(table_number=3, table_name='Table 3', table_type='Pool', billing_mode='per_frame'),
        # VIP table on its own rates
        dict(table_number=4, table_name='VIP', table_type='8-Ball', billing_mode='hourly',
             use_global_pricing=False, custom_pricing=json.dumps({'per_hour': '350', 'per_frame': '80'})),
    ]
    for t in tables:
        db.session.add(PoolTable(club_id=club.id, **t))

    for item_name, price, category in [('Cold Drink', '40', 'beverage'), ('Chips', '30', 'snack'),
                                       ('Water', '20', 'beverage'), ('Tea', '15', 'beverage')]:
        db.session.add(InventoryItem(club_id=club.id, name=item_name, price=Decimal(price),
                                     stock=50, category=category))

    for member_name in ['Arjun', 'Meera', 'Kabir']:
        db.session.add(Member(club_id=club.id, name=member_name))

    db.session.commit()
    return club
