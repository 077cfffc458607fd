from msgstore.main import main

main()
