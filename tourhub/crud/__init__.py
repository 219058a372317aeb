from . import blogs, bookings, outbox, payments, payouts, reviews, subscriptions, tours, users
