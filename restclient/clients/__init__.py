"""HTTP clients and the request pipeline they send through."""
