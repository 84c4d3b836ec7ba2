"""Import-from-URL tasks: a controller and one download child per file."""
